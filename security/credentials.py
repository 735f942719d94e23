import logging
from typing import Optional

from ingest.account_client import AccountClient, Credentials
from risk.models import BinanceAccount
from security.encryption import CredentialCipher
from store.base import AlertStore


logger = logging.getLogger(__name__)


class CredentialsMissing(Exception):
    """The user has no active exchange account configured."""


class CredentialVault:
    """Encrypts exchange keys on the way into the store and decrypts them on the way out."""

    def __init__(self, store: AlertStore, cipher: Optional[CredentialCipher] = None):
        self.store = store
        self._cipher = cipher

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = CredentialCipher()
        return self._cipher

    async def save(self, user_id: str, account_name: str, api_key: str, api_secret: str) -> BinanceAccount:
        """Store new keys as the user's active account; earlier accounts are deactivated."""
        account = BinanceAccount(
            user_id=user_id,
            account_name=account_name,
            api_key=self.cipher.encrypt(api_key),
            api_secret=self.cipher.encrypt(api_secret),
        )
        return await self.store.save_account(account)

    def decrypt_account(self, account: BinanceAccount) -> Credentials:
        # DecryptionError propagates so callers can ask for re-entry
        return Credentials(
            api_key=self.cipher.decrypt(account.api_key),
            api_secret=self.cipher.decrypt(account.api_secret),
        )

    async def credentials_for(self, user_id: str) -> Credentials:
        account = await self.store.get_active_account(user_id)
        if account is None:
            raise CredentialsMissing(f"No active exchange account for {user_id}")
        return self.decrypt_account(account)

    async def client_for(self, user_id: str) -> AccountClient:
        return AccountClient(await self.credentials_for(user_id))
