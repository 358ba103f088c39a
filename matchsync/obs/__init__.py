"""Observability bootstrap for applications embedding matchsync."""

from __future__ import annotations

from typing import Optional

from matchsync.obs import logging as obs_logging
from matchsync.settings import settings


def init(level: Optional[str] = None) -> bool:
	"""Route log records through the JSON formatter unless observability is off."""
	if not settings.obs_enabled:
		return False
	obs_logging.configure_logging(level)
	return True


__all__ = ["init"]
