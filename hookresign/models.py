import enum
from dataclasses import dataclass
from typing import Callable, Optional

LogSink = Callable[[str], None]

CERT_SENTINEL = "00"


def print_log(message: str) -> None:
    print(message, flush=True)


class Stage(str, enum.Enum):
    INIT = "Init"
    EXTRACTING = "Extracting"
    DECOMPILING = "Decompiling"
    PLANNING = "Planning"
    INJECTING = "Injecting"
    RECOMPILING = "Recompiling"
    MERGING = "Merging"
    ALIGNING = "Aligning"
    SIGNING = "Signing"
    VERIFYING = "Verifying"
    DONE = "Done"
    FAILED = "Failed"


class CertificateSource(str, enum.Enum):
    SIGNING_BLOCK = "signing-block"
    LEGACY = "legacy"
    # Both of these carry CERT_SENTINEL; the source tells them apart.
    ABSENT = "absent"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class CertificateResult:
    cert_hex: str
    source: CertificateSource
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.source in (CertificateSource.SIGNING_BLOCK, CertificateSource.LEGACY)


@dataclass(frozen=True)
class ApkArtifact:
    path: str
    package_name: str
    cert_hex: str
    has_application_class: bool
    cert_source: CertificateSource = CertificateSource.ABSENT


class Strategy(str, enum.Enum):
    APPLICATION_HOOK = "ApplicationHook"
    MANIFEST_SYNTHESIS = "ManifestSynthesis"
    ACTIVITY_FALLBACK = "ActivityFallback"


class InjectionSite(str, enum.Enum):
    ATTACH_BASE_CONTEXT = "attachBaseContext"
    STATIC_INITIALIZER = "staticInitializer"
    PROVIDER_ON_CREATE = "providerOnCreate"


@dataclass(frozen=True)
class InjectionPlan:
    strategy: Strategy
    target_class: str
    target_method: str
    site: InjectionSite
    min_locals: int


@dataclass(frozen=True)
class SmaliPatch:
    path: str
    method: str
    code: str
    locals_count: int
    created: bool = False


@dataclass(frozen=True)
class SignatureReport:
    v1: bool = False
    v2: bool = False
    v3: bool = False
    signer_dn: str = ""
    md5: str = ""
    sha1: str = ""
    sha256: str = ""

    @property
    def verified_schemes(self) -> list[str]:
        return [name for name, ok in (("v1", self.v1), ("v2", self.v2), ("v3", self.v3)) if ok]


@dataclass(frozen=True)
class ResignResult:
    success: bool
    message: str
    output_path: Optional[str] = None
    stage: Stage = Stage.DONE

    @classmethod
    def failed(cls, stage: Stage, message: str) -> "ResignResult":
        return cls(success=False, message=message, output_path=None, stage=stage)


@dataclass
class ResignOptions:
    tool_timeout: Optional[float] = None
    verify: bool = True
    v1_signing: bool = True
    v2_signing: bool = True
    v3_signing: bool = True
    decode_resources: bool = False
