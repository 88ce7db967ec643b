"""
SessionSync -- encrypted chat session sync across devices.

Chat sessions live on every machine you work on. SessionSync moves them
through a private remote store, encrypted end to end under a passphrase
only you hold.
"""

import os

__version__ = "0.3.0"

SESSIONSYNC_HOME = os.environ.get("SESSIONSYNC_HOME", "~/.sessionsync")
