"""Realtime reconciliation exports."""

from .channel import ChannelState, ManagedChannel
from .reconciler import ConversationRealtime, ProfilesRealtime, UserRealtime

__all__ = [
	"ChannelState",
	"ConversationRealtime",
	"ManagedChannel",
	"ProfilesRealtime",
	"UserRealtime",
]
