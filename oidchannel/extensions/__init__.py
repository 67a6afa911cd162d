"""OpenID Extension modules."""

__all__ = ['sreg']
