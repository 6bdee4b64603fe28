from typing import Optional


class ResignError(RuntimeError):
    """Base class for every failure raised inside a resign job."""


class ToolNotFound(ResignError):
    pass


class ToolFailure(ResignError):
    """An external command exited non-zero or ran past its deadline."""

    def __init__(self, message: str, command: Optional[list[str]] = None, output: str = ""):
        super().__init__(message)
        self.command = command or []
        self.output = output


class CertificateNotFound(ResignError):
    pass


class ManifestParseFailure(ResignError):
    pass


class NoInjectionTargetFound(ResignError):
    pass


InjectionImpossible = NoInjectionTargetFound


class DexMergeFailure(ResignError):
    pass


class SigningFailure(ResignError):
    pass


class VerificationFailure(ResignError):
    pass
