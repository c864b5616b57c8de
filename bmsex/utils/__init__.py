from bmsex.utils.cache import TTLCache

__all__ = ['TTLCache']
