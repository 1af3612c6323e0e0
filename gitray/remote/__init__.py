from .base import RemoteStore
from .github import GithubRemote
from .memory import MemoryRemote

__all__ = ["RemoteStore", "GithubRemote", "MemoryRemote"]
