from .digest_store import DigestStore

__all__ = ["DigestStore"]
