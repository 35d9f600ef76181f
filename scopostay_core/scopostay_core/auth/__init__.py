"""Client-side identity helpers."""

from scopostay_core.auth.callback import wait_for_session

__all__ = ["wait_for_session"]
