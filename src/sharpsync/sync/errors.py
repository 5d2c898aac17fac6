"""Exceptions raised by the sync engine."""


class InternalInvariantError(RuntimeError):
    """A programming error was detected; the current sync pass must abort.

    Raised e.g. for a lead that ends up without an action, a create that
    carries a Sharpspring ID, or a queued batch mixing creates and updates.
    """
