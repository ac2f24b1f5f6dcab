from __future__ import annotations


class MalformedEventError(ValueError):
    """Classification event lacks the data needed to attach it to a call."""


class DetachedSessionError(RuntimeError):
    """Ingestion attempted after the capture session was torn down."""


class InconsistentReferenceWarning(UserWarning):
    """A sequence event points at a call id the store does not know."""
