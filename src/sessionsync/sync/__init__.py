"""
Session sync -- encrypted multi-device chat history.

Sessions never leave the machine in the clear. Every object pushed is
sealed with a key derived from the user's passphrase; the remote only
ever stores ciphertext.

Backends: GitHub (private repository via the REST API), local directory.
"""

from .backends import GitHubStore, LocalStore, RemoteStore, create_store
from .engine import SyncEngine

__all__ = ["GitHubStore", "LocalStore", "RemoteStore", "SyncEngine", "create_store"]
