from hookresign.errors import (
    CertificateNotFound,
    DexMergeFailure,
    InjectionImpossible,
    ManifestParseFailure,
    NoInjectionTargetFound,
    ResignError,
    SigningFailure,
    ToolFailure,
    ToolNotFound,
    VerificationFailure,
)
from hookresign.models import CertificateResult, ResignOptions, ResignResult, SignatureReport, Stage
from hookresign.orchestrator import inject_and_resign_apk
from hookresign.signature import extract, extract_certificate
from hookresign.signing import analyze_apk, analyze_apk_signature, get_keystore_aliases, resign_apk

__version__ = "0.1.0"
