import argparse
import json
import os
import sys
from typing import Optional

from hookresign.errors import ResignError
from hookresign.models import ResignOptions
from hookresign.orchestrator import inject_and_resign_apk
from hookresign.signature import extract_certificate
from hookresign.signing import analyze_apk, analyze_apk_signature, get_keystore_aliases, resign_apk

DEFAULT_CONFIG = "resign-config.json"


def load_config(config_path):
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            return json.load(f)
    return {}


def add_signing_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--keystore", help="Path to keystore for signing")
    parser.add_argument("--ks-pass", help="Keystore password (or HOOKRESIGN_KS_PASS)")
    parser.add_argument("--key-pass", help="Key password (defaults to the keystore password)")
    parser.add_argument("--key-alias", help="Key alias")
    parser.add_argument("--no-verify", action="store_true", help="Skip signature verification after signing")
    parser.add_argument("--no-v1", action="store_true", help="Disable v1 (JAR) signing")
    parser.add_argument("--tool-timeout", type=float, help="Per-command timeout in seconds (0 disables)")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="APK re-signing with runtime signature spoofing")
    parser.add_argument("--config", default=DEFAULT_CONFIG, help="Path to config file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    hook = subparsers.add_parser("hook", help="Inject the signature hook, then re-sign")
    hook.add_argument("--target", help="Path to the target APK")
    hook.add_argument(
        "--decode-resources",
        action="store_true",
        help="Decode resources with apktool (enables the text manifest fallback)",
    )
    add_signing_arguments(hook)

    sign = subparsers.add_parser("sign", help="Re-sign without instrumentation")
    sign.add_argument("--target", help="Path to the target APK")
    add_signing_arguments(sign)

    aliases = subparsers.add_parser("aliases", help="List the aliases in a keystore")
    aliases.add_argument("--keystore", help="Path to keystore")
    aliases.add_argument("--ks-pass", help="Keystore password (or HOOKRESIGN_KS_PASS)")

    info = subparsers.add_parser("info", help="Show package summary and original certificate")
    info.add_argument("--target", help="Path to the APK")

    verify = subparsers.add_parser("verify", help="Report which signature schemes verify")
    verify.add_argument("--target", help="Path to the APK")
    return parser


def pick(args, config: dict, name: str, env_var: Optional[str] = None):
    value = getattr(args, name, None)
    if value is None:
        value = config.get(name)
    if value is None and env_var:
        value = os.environ.get(env_var)
    return value


def resolve_options(args, config: dict) -> ResignOptions:
    timeout = pick(args, config, "tool_timeout")
    return ResignOptions(
        tool_timeout=float(timeout) if timeout is not None else None,
        verify=not (args.no_verify or config.get("no_verify", False)),
        v1_signing=not (args.no_v1 or config.get("no_v1", False)),
        decode_resources=bool(getattr(args, "decode_resources", False) or config.get("decode_resources", False)),
    )


def resolve_signing(args, config: dict) -> tuple[str, str, str, str]:
    keystore = pick(args, config, "keystore")
    ks_pass = pick(args, config, "ks_pass", "HOOKRESIGN_KS_PASS")
    key_alias = pick(args, config, "key_alias")
    missing = [
        flag
        for flag, value in (("--keystore", keystore), ("--ks-pass", ks_pass), ("--key-alias", key_alias))
        if not value
    ]
    if missing:
        raise ResignError(f"Missing signing options: {', '.join(missing)}")
    key_pass = pick(args, config, "key_pass") or ks_pass
    return keystore, ks_pass, key_pass, key_alias


def require_target(args, config: dict) -> str:
    target = pick(args, config, "target")
    if not target:
        raise ResignError("Target APK not specified (use --target or config file)")
    return target


def run_hook(args, config: dict) -> int:
    target = require_target(args, config)
    keystore, ks_pass, key_pass, alias = resolve_signing(args, config)
    result = inject_and_resign_apk(target, keystore, ks_pass, key_pass, alias, options=resolve_options(args, config))
    if not result.success:
        print(f"Error: {result.message}")
        return 1
    print(f"Done! Hooked APK: {result.output_path}")
    return 0


def run_sign(args, config: dict) -> int:
    target = require_target(args, config)
    keystore, ks_pass, key_pass, alias = resolve_signing(args, config)
    result = resign_apk(target, keystore, ks_pass, key_pass, alias, options=resolve_options(args, config))
    if not result.success:
        print(f"Error: {result.message}")
        return 1
    print(f"Done! Signed APK: {result.output_path}")
    return 0


def run_aliases(args, config: dict) -> int:
    keystore = pick(args, config, "keystore")
    ks_pass = pick(args, config, "ks_pass", "HOOKRESIGN_KS_PASS")
    if not keystore or not ks_pass:
        raise ResignError("Both --keystore and --ks-pass are required")
    for alias in get_keystore_aliases(keystore, ks_pass):
        print(alias)
    return 0


def run_info(args, config: dict) -> int:
    target = require_target(args, config)
    summary = analyze_apk(target)
    for key, value in summary.items():
        print(f"{key}: {value or '-'}")
    certificate = extract_certificate(target)
    print(f"certificate_source: {certificate.source.value}")
    print(f"certificate: {certificate.cert_hex}")
    return 0


def run_verify(args, config: dict) -> int:
    report = analyze_apk_signature(require_target(args, config))
    print(f"schemes: {', '.join(report.verified_schemes) or 'none'}")
    return 0 if report.verified_schemes else 1


COMMANDS = {
    "hook": run_hook,
    "sign": run_sign,
    "aliases": run_aliases,
    "info": run_info,
    "verify": run_verify,
}


def main(argv=None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    try:
        return COMMANDS[args.command](args, config)
    except ResignError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
