"""Errors raised by the cluster layer."""

from __future__ import annotations


class ClusterError(Exception):
    """Base class for failures in cluster membership and routing."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class TransportError(ClusterError):
    """A message could not be delivered to a peer or its reply was unusable."""


class InternalError(ClusterError):
    """The local node hit an unrecoverable condition, such as unreadable state."""