from jobex.config.jobex_config import JobEXConfig, default_config

__all__ = ['JobEXConfig', 'default_config']
