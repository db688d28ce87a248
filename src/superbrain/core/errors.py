"""
Error taxonomy.

Every failure an engine operation reports to its caller is one of these.
Provider and parse errors are normally absorbed inside the engine (think
degrades to memory-only, scans count failed files); persistence, input and
lookup errors reach the caller.
"""


class SuperBrainError(Exception):
    """Base class for all engine errors."""


class InputError(SuperBrainError, ValueError):
    """Caller supplied an invalid argument (empty text, bad range, unknown type)."""


class ProviderError(SuperBrainError):
    """AI provider unreachable, timed out or answered with an error."""


class PersistenceError(SuperBrainError):
    """Durable storage failed to read or write."""


class ParseError(SuperBrainError):
    """A file could not be turned into text."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class NotFoundError(SuperBrainError, KeyError):
    """No entry with the requested id."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""
