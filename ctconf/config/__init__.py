"""Container config format and persistence."""
from ctconf.config.codec import ConfigCodec, parse_config, write_config
from ctconf.config.store import ConfigStore

__all__ = ['ConfigCodec', 'ConfigStore', 'parse_config', 'write_config']
