"""Request identity for the Decision Rooms API."""

from .dependencies import get_current_participant, get_data_store, require_operator

__all__ = ["get_current_participant", "get_data_store", "require_operator"]
