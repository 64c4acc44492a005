from __future__ import annotations


class RulesControllerError(RuntimeError):
    """Base class for errors raised while reconciling MimirRule resources."""


class InvalidKeyError(RulesControllerError):
    """Raised when a work queue key is not of the form ``namespace/name``."""


class TranslationError(RulesControllerError):
    """The resource spec cannot be converted into a remote rule namespace."""


class RuleValidationError(RulesControllerError):
    """The translated rule namespace violates structural constraints."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class LintError(RulesControllerError):
    """One or more rule expressions were rejected by the expression linter."""


class RemoteApplyError(RulesControllerError):
    """The remote rule service rejected a create/delete call or was unreachable."""


class PersistError(RulesControllerError):
    """Writing the resource back to the Kubernetes API failed."""


class CacheSyncError(RulesControllerError):
    """The watch cache did not complete its initial listing in time."""
