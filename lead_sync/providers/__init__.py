"""Provider adapters feeding records into the sync engine."""

from .base import Provider, StaticProvider
from .file import FileProvider

__all__ = ["Provider", "StaticProvider", "FileProvider"]
