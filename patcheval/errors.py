from __future__ import annotations


class PatchevalError(RuntimeError):
    pass


class TemplateMissing(PatchevalError):
    pass


class CatalogError(PatchevalError, ValueError):
    pass


class BackendTransientError(PatchevalError):
    """
    Infrastructure hiccup talking to the backend (refused/reset connection, busy, garbled body).
    Retried indefinitely; never becomes a verdict.
    """


class BackendError(PatchevalError):
    """
    Non-retryable backend rejection (bad request, unknown model).
    """


class RefResolutionError(PatchevalError):
    """
    The repository could not be queried for a ref at all (not a repo, git failure).
    """


class CommitNotFound(PatchevalError, LookupError):
    pass


class RunCancelled(PatchevalError):
    pass
