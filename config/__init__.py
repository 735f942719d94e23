from .config_loader import Config, SectionProxy, config

__all__ = ['config', 'Config', 'SectionProxy']
