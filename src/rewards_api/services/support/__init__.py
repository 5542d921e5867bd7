from .router import SupportRouter

__all__ = ["SupportRouter"]
