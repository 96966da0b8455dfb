# Sharing Module - credential delivery to the trusted agent

from .channel import PendingShare, SharingChannel
from .token import load_or_create_token, verify_token

__all__ = [
    "PendingShare",
    "SharingChannel",
    "load_or_create_token",
    "verify_token",
]
