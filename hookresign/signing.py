import os
import re
import shutil
import tempfile
from typing import Optional

from hookresign.errors import ResignError, SigningFailure, ToolFailure, ToolNotFound, VerificationFailure
from hookresign.models import LogSink, ResignOptions, ResignResult, SignatureReport, Stage, print_log
from hookresign.toolchain import (
    find_android_build_tool,
    find_jarsigner_cmd,
    find_keytool_cmd,
    resolve_tool_timeout,
    run_logged_command,
)

ALIAS_LABELS = ("Alias name:", "别名:")
SCHEME_RE = {
    scheme: re.compile(rf"Verified using {scheme} scheme[^:]*:\s*(true|false)", re.IGNORECASE)
    for scheme in ("v1", "v2", "v3")
}
SIGNER_DN_RE = re.compile(r"Signer #\d+ certificate DN: (.+)")
SIGNER_DIGEST_RE = {
    "md5": re.compile(r"Signer #\d+ certificate MD5 digest: (.+)"),
    "sha1": re.compile(r"Signer #\d+ certificate SHA-1 digest: (.+)"),
    "sha256": re.compile(r"Signer #\d+ certificate SHA-256 digest: (.+)"),
}
BADGING_RE = {
    "package_name": re.compile(r"package: name='([^']+)'"),
    "version_code": re.compile(r"versionCode='([^']*)'"),
    "version_name": re.compile(r"versionName='([^']*)'"),
    "label": re.compile(r"application-label:'([^']*)'"),
}


def parse_keystore_aliases(output: str) -> list[str]:
    aliases = []
    for line in output.splitlines():
        for label in ALIAS_LABELS:
            if label in line:
                aliases.append(line.split(label, 1)[1].strip())
                break
    return aliases


def get_keystore_aliases(
    keystore_path: str, store_pass: str, on_log: LogSink = print_log, timeout: Optional[float] = None
) -> list[str]:
    keytool = find_keytool_cmd()
    try:
        output = run_logged_command(
            [keytool, "-list", "-v", "-keystore", keystore_path, "-storepass", store_pass],
            "keytool -list",
            on_log,
            timeout=resolve_tool_timeout(timeout),
            echo_output=False,
        )
    except ToolFailure as e:
        raise SigningFailure(f"Unable to read keystore {keystore_path}: {e.output.strip() or e}") from e
    return parse_keystore_aliases(output)


def analyze_apk(apk_path: str, on_log: LogSink = print_log, timeout: Optional[float] = None) -> dict[str, str]:
    """Package summary from ``aapt dump badging``; empty values when aapt is unavailable."""
    summary = {key: "" for key in BADGING_RE}
    aapt = find_android_build_tool("aapt")
    if not aapt:
        on_log("aapt not found, skipping badging")
        return summary

    try:
        output = run_logged_command(
            [aapt, "dump", "badging", apk_path], "aapt dump badging", on_log,
            timeout=resolve_tool_timeout(timeout), echo_output=False,
        )
    except ToolFailure as e:
        on_log(f"aapt dump badging failed: {e}")
        return summary

    for key, pattern in BADGING_RE.items():
        match = pattern.search(output)
        if match:
            summary[key] = match.group(1)
    return summary


def zipalign_apk(
    input_apk: str, output_apk: str, on_log: LogSink = print_log, timeout: Optional[float] = None
) -> bool:
    """Align to 4-byte boundaries; copies unaligned when zipalign is missing."""
    zipalign = find_android_build_tool("zipalign")
    if not zipalign:
        on_log("Warning: zipalign not found, skipping alignment")
        shutil.copyfile(input_apk, output_apk)
        return False

    run_logged_command([zipalign, "-f", "-p", "4", input_apk, output_apk], "zipalign", on_log, timeout=timeout)
    return True


def ensure_alias_exists(
    keystore_path: str, store_pass: str, alias: str, on_log: LogSink, timeout: Optional[float]
) -> None:
    try:
        aliases = get_keystore_aliases(keystore_path, store_pass, on_log, timeout)
    except ToolNotFound:
        on_log("keytool not found, skipping alias check")
        return
    if alias not in aliases:
        raise SigningFailure(f"Alias '{alias}' not found in keystore (available: {', '.join(aliases) or 'none'})")


def sign_apk(
    input_apk: str,
    output_apk: str,
    keystore_path: str,
    store_pass: str,
    key_pass: str,
    alias: str,
    on_log: LogSink = print_log,
    options: Optional[ResignOptions] = None,
) -> None:
    options = options or ResignOptions()
    timeout = resolve_tool_timeout(options.tool_timeout)
    if not os.path.isfile(keystore_path):
        raise SigningFailure(f"Keystore not found: {keystore_path}")

    ensure_alias_exists(keystore_path, store_pass, alias, on_log, options.tool_timeout)

    apksigner = find_android_build_tool("apksigner")
    if apksigner:
        cmd = [
            apksigner,
            "sign",
            "--ks", keystore_path,
            "--ks-pass", f"pass:{store_pass}",
            "--key-pass", f"pass:{key_pass}",
            "--ks-key-alias", alias,
            "--v1-signing-enabled", str(options.v1_signing).lower(),
            "--v2-signing-enabled", str(options.v2_signing).lower(),
            "--v3-signing-enabled", str(options.v3_signing).lower(),
            "--out", output_apk,
            input_apk,
        ]
        try:
            run_logged_command(cmd, "apksigner sign", on_log, timeout=timeout)
        except ToolFailure as e:
            raise SigningFailure(str(e)) from e
    else:
        on_log("apksigner not found, falling back to jarsigner (v1 only)")
        try:
            jarsigner = find_jarsigner_cmd()
        except ToolNotFound as e:
            raise SigningFailure(f"No signing tool available: {e}") from e
        shutil.copyfile(input_apk, output_apk)
        cmd = [
            jarsigner,
            "-sigalg", "SHA256withRSA",
            "-digestalg", "SHA-256",
            "-keystore", keystore_path,
            "-storepass", store_pass,
            "-keypass", key_pass,
            output_apk,
            alias,
        ]
        try:
            run_logged_command(cmd, "jarsigner", on_log, timeout=timeout)
        except ToolFailure as e:
            os.remove(output_apk)
            raise SigningFailure(str(e)) from e

    if not os.path.exists(output_apk):
        raise SigningFailure("Signed APK was not produced")


def parse_signature_report(output: str) -> SignatureReport:
    flags = {}
    for scheme, pattern in SCHEME_RE.items():
        match = pattern.search(output)
        flags[scheme] = bool(match) and match.group(1).lower() == "true"

    fields = {}
    dn = SIGNER_DN_RE.search(output)
    fields["signer_dn"] = dn.group(1).strip() if dn else ""
    for key, pattern in SIGNER_DIGEST_RE.items():
        match = pattern.search(output)
        fields[key] = match.group(1).strip().lower() if match else ""
    return SignatureReport(**flags, **fields)


def analyze_apk_signature(
    apk_path: str, on_log: LogSink = print_log, timeout: Optional[float] = None
) -> SignatureReport:
    apksigner = find_android_build_tool("apksigner")
    if not apksigner:
        raise VerificationFailure("apksigner not found, cannot verify signature")

    try:
        output = run_logged_command(
            [apksigner, "verify", "--print-certs", "--verbose", apk_path],
            "apksigner verify",
            on_log,
            timeout=resolve_tool_timeout(timeout),
            echo_output=False,
        )
    except ToolFailure as e:
        raise VerificationFailure(f"Signature verification failed: {e.output.strip() or e}") from e

    report = parse_signature_report(output)
    on_log(
        "Signature schemes: "
        + "  ".join(f"{name.upper()}: {'yes' if ok else 'no'}" for name, ok in
                    (("v1", report.v1), ("v2", report.v2), ("v3", report.v3)))
    )
    if report.signer_dn:
        on_log(f"Signer: {report.signer_dn}")
    if report.sha256:
        on_log(f"SHA-256: {report.sha256}")
    return report


def signed_output_path(apk_path: str, suffix: str) -> str:
    stem, ext = os.path.splitext(apk_path)
    return f"{stem}{suffix}{ext or '.apk'}"


def resign_apk(
    apk_path: str,
    keystore_path: str,
    store_pass: str,
    key_pass: str,
    alias: str,
    on_log: LogSink = print_log,
    options: Optional[ResignOptions] = None,
) -> ResignResult:
    """Sign ``apk_path`` with a new key, no instrumentation."""
    options = options or ResignOptions()
    if not apk_path or not os.path.isfile(apk_path):
        return ResignResult.failed(Stage.INIT, f"APK not found: {apk_path}")

    output_apk = signed_output_path(apk_path, "_signed")
    on_log("Signing...")
    with tempfile.TemporaryDirectory(prefix="hookresign-sign-") as temp_dir:
        staged = os.path.join(temp_dir, "signed.apk")
        try:
            sign_apk(apk_path, staged, keystore_path, store_pass, key_pass, alias, on_log, options)
        except ResignError as e:
            on_log(f"Signing failed: {e}")
            return ResignResult.failed(Stage.SIGNING, f"Failed at {Stage.SIGNING.value}: {type(e).__name__}: {e}")

        if options.verify:
            on_log("Verifying signature...")
            try:
                analyze_apk_signature(staged, on_log, options.tool_timeout)
            except ResignError as e:
                on_log(f"Warning: {e}")

        shutil.move(staged, output_apk)

    return ResignResult(success=True, message="Signed successfully", output_path=output_apk)
