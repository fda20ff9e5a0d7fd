from .config_loader import config, Config, ConfigError, SectionProxy, is_unset

__all__ = ['config', 'Config', 'ConfigError', 'SectionProxy', 'is_unset']
