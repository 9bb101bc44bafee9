from .bus import FactPublisher, new_correlation_id

__all__ = ["FactPublisher", "new_correlation_id"]
