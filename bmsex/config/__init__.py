from bmsex.config.bmsex_config import BMSEXConfig

__all__ = ['BMSEXConfig']
