"""Exception taxonomy for CardForge.

Every error raised by the generation pipeline derives from
:class:`CardForgeError` so that route handlers can catch the whole family
in one place.  The subclasses encode *how* an error must be handled rather
than *where* it came from:

========================  ==================================================
Exception                 Handling
========================  ==================================================
TransientExternalError    Retried inside the polling worker's attempt budget.
TerminalExternalFailure   Recorded on the cache record, never retried.
DataIntegrityError        Logged; the poll attempt counts as failed.
ResourceNotFound          Converted to an empty-state response or a 404.
JobStateError             Programming error: illegal state transition.
========================  ==================================================
"""

from __future__ import annotations


class CardForgeError(Exception):
    """Base class for all CardForge errors."""


class TransientExternalError(CardForgeError):
    """A single external call failed in a way that may succeed on retry.

    Network failures, timeouts and non-2xx responses from a status
    endpoint all land here.
    """


class TerminalExternalFailure(CardForgeError):
    """The external service explicitly reported a failure.

    The message is surfaced verbatim on the cache record.
    """


class DataIntegrityError(CardForgeError):
    """An external response did not have the documented shape."""


class ResourceNotFound(CardForgeError):
    """No record or file exists for the requested key."""


class JobStateError(CardForgeError):
    """A generation job was asked to leave a terminal state."""


class CachePersistenceWarning(UserWarning):
    """A cache mutation could not be written to disk.

    The in-memory cache is still authoritative, so this is a warning and not
    an exception.
    """
