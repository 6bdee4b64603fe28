"""Read the signing certificate an APK was originally signed with.

The APK Signing Block (v3, then v2) is authoritative. Packages that only carry
a JAR signature fall back to the PKCS#7 block under ``META-INF/``. When neither
yields a certificate the sentinel ``"00"`` is returned with a warning: the job
still resigns, the spoofed certificate is simply inert.
"""
import zipfile
from typing import Optional

from androguard.core.apk import APK
from pyasn1.codec.der.decoder import decode as pyasn1_decode
from pyasn1.codec.der.encoder import encode as pyasn1_encode
from pyasn1.error import PyAsn1Error
from pyasn1_modules import rfc2315

from hookresign.errors import CertificateNotFound
from hookresign.models import CERT_SENTINEL, CertificateResult, CertificateSource, LogSink, print_log

SIGNATURE_BLOCK_EXTENSIONS = (".RSA", ".DSA", ".EC")


def read_signing_block_certificate(apk_path: str) -> Optional[bytes]:
    apk = APK(apk_path)
    v3_certs = apk.get_certificates_der_v3()
    v2_certs = apk.get_certificates_der_v2()
    certs = v3_certs or v2_certs
    if not certs:
        return None
    return bytes(certs[0])


def find_signature_block_entry(names: list[str]) -> Optional[str]:
    for name in names:
        if not name.startswith("META-INF/") or name.count("/") != 1:
            continue
        if name.upper().endswith(SIGNATURE_BLOCK_EXTENSIONS):
            return name
    return None


def certificate_from_pkcs7(data: bytes) -> bytes:
    try:
        cinf = pyasn1_decode(data, asn1Spec=rfc2315.ContentInfo())[0]
        if cinf["contentType"] != rfc2315.signedData:
            raise CertificateNotFound("Signature block file contentType is not signedData")
        sdat = pyasn1_decode(cinf["content"], asn1Spec=rfc2315.SignedData())[0]
        certificates = [pyasn1_encode(cert["certificate"]) for cert in sdat["certificates"]]
    except PyAsn1Error as e:
        raise CertificateNotFound("Unable to parse signature block file data") from e
    if not certificates:
        raise CertificateNotFound("No certificates in signature block file")
    return certificates[0]


def read_legacy_certificate(apk_path: str) -> Optional[bytes]:
    with zipfile.ZipFile(apk_path, "r") as zf:
        entry = find_signature_block_entry(zf.namelist())
        if entry is None:
            return None
        data = zf.read(entry)
    return certificate_from_pkcs7(data)


def extract_certificate(apk_path: str, on_log: LogSink = print_log) -> CertificateResult:
    errors: list[str] = []

    try:
        cert = read_signing_block_certificate(apk_path)
        if cert:
            return CertificateResult(cert.hex().lower(), CertificateSource.SIGNING_BLOCK)
    except Exception as e:
        # androguard raises a wide range of parse errors on damaged packages
        errors.append(f"signing block: {e}")
        on_log(f"Signing block reader failed: {e}")

    try:
        cert = read_legacy_certificate(apk_path)
        if cert:
            return CertificateResult(cert.hex().lower(), CertificateSource.LEGACY)
    except (CertificateNotFound, zipfile.BadZipFile, OSError) as e:
        errors.append(f"legacy: {e}")
        on_log(f"Legacy signature reader failed: {e}")

    if errors:
        on_log("Warning: unable to read the original certificate; the resigned APK may fail its signature check")
        return CertificateResult(CERT_SENTINEL, CertificateSource.UNREADABLE, "; ".join(errors))

    on_log("Warning: package carries no signature; the resigned APK may fail its signature check")
    return CertificateResult(CERT_SENTINEL, CertificateSource.ABSENT)


def extract(apk_path: str, on_log: LogSink = print_log) -> str:
    return extract_certificate(apk_path, on_log).cert_hex
