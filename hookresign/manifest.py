import os
import re
import zipfile
from dataclasses import dataclass
from typing import Optional

from androguard.core.axml import AXMLPrinter

from hookresign.errors import ManifestParseFailure, ToolFailure, ToolNotFound
from hookresign.models import LogSink, print_log
from hookresign.toolchain import find_manifest_editor_cmd, run_logged_command

# RES_XML_TYPE chunk header of a packed (binary) AndroidManifest.xml
BINARY_XML_MAGIC = b"\x03\x00"
MAIN_ACTION = "android.intent.action.MAIN"
LAUNCHER_CATEGORY = "android.intent.category.LAUNCHER"

PACKAGE_RE = re.compile(r"""package\s*=\s*["']([^"']+)["']""")
ANDROID_NAME_RE = re.compile(r"""android:name\s*=\s*["']([^"']+)["']""")
TARGET_ACTIVITY_RE = re.compile(r"""android:targetActivity\s*=\s*["']([^"']+)["']""")
# Opening <application ...> tag only; ">" inside quoted attribute values does not end it.
APPLICATION_TAG_RE = re.compile(r"""<application\b(?:[^>"']|"[^"]*"|'[^']*')*>?""")
PROVIDER_RE = re.compile(r"""<provider\b[^>]*?android:name\s*=\s*["']([^"']+)["']""", re.DOTALL)
SYSTEM_PROVIDER_PREFIXES = ("android.", "androidx.", "com.google.")


@dataclass(frozen=True)
class ManifestInfo:
    package_name: str
    application_class: Optional[str]
    launch_activity: Optional[str]
    content_provider: Optional[str]
    text: str
    binary_only: bool = False

    @property
    def has_application_class(self) -> bool:
        return bool(self.application_class)

    @property
    def textually_patchable(self) -> bool:
        return not self.binary_only and "<application" in self.text


@dataclass(frozen=True)
class ManifestEdit:
    mode: str  # "binary" or "text"
    application_class: str
    binary_manifest_path: Optional[str] = None


def is_binary_xml(data: bytes) -> bool:
    return len(data) > 4 and data[:2] == BINARY_XML_MAGIC


def convert_binary_manifest(data: bytes) -> str:
    try:
        printer = AXMLPrinter(data)
        if not printer.is_valid():
            raise ManifestParseFailure("Binary manifest could not be decoded")
        xml = printer.get_xml(pretty=True)
    except ManifestParseFailure:
        raise
    except Exception as e:
        raise ManifestParseFailure(f"Binary manifest could not be decoded: {e}") from e
    return xml.decode("utf-8") if isinstance(xml, bytes) else xml


def qualify_class_name(class_name: str, package_name: str) -> str:
    if class_name.startswith("."):
        return package_name + class_name
    if "." not in class_name and package_name:
        return f"{package_name}.{class_name}"
    return class_name


def extract_package_name(text: str) -> Optional[str]:
    match = PACKAGE_RE.search(text)
    return match.group(1) if match else None


def application_tag_region(text: str) -> Optional[tuple[int, int]]:
    """Span of the opening <application ...> tag, ending at its closing ">"."""
    match = APPLICATION_TAG_RE.search(text)
    if match is None:
        return None
    return match.start(), match.end()


def extract_application_name(text: str) -> Optional[str]:
    region = application_tag_region(text)
    if region is None:
        return None

    match = ANDROID_NAME_RE.search(text, region[0], region[1])
    if not match:
        return None

    name = match.group(1)
    if name.startswith("@") or name.startswith("android.") or name in ("true", "false"):
        return None
    return name


def find_launch_activity(text: str) -> Optional[str]:
    for part in text.split("<activity")[1:]:
        end = part.find("</activity")
        block = part[:end] if end != -1 else part
        if MAIN_ACTION not in block or LAUNCHER_CATEGORY not in block:
            continue

        if block.startswith("-alias"):
            match = TARGET_ACTIVITY_RE.search(block)
        else:
            match = ANDROID_NAME_RE.search(block)
        if match:
            return match.group(1)
    return None


def find_content_provider(text: str) -> Optional[str]:
    for match in PROVIDER_RE.finditer(text):
        name = match.group(1)
        if not name.startswith(SYSTEM_PROVIDER_PREFIXES):
            return name
    return None


def analyze_manifest_text(text: str, package_name: Optional[str] = None, binary_only: bool = False) -> ManifestInfo:
    package = package_name or extract_package_name(text)
    if not package:
        raise ManifestParseFailure("Package name not found in AndroidManifest.xml")

    application = extract_application_name(text)
    launch_activity = find_launch_activity(text)
    provider = find_content_provider(text)
    return ManifestInfo(
        package_name=package,
        application_class=qualify_class_name(application, package) if application else None,
        launch_activity=qualify_class_name(launch_activity, package) if launch_activity else None,
        content_provider=qualify_class_name(provider, package) if provider else None,
        text=text,
        binary_only=binary_only,
    )


def load_manifest(manifest_path: str, package_name: Optional[str] = None, on_log: LogSink = print_log) -> ManifestInfo:
    """Read the decoded manifest, converting packed XML to text in place."""
    try:
        with open(manifest_path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ManifestParseFailure(f"Cannot read {manifest_path}: {e}") from e

    binary_only = False
    if is_binary_xml(data):
        on_log("Binary AndroidManifest.xml detected, converting to text...")
        try:
            text = convert_binary_manifest(data)
            with open(manifest_path, "w", encoding="utf-8") as f:
                f.write(text)
        except ManifestParseFailure as e:
            on_log(f"Warning: {e}; falling back to raw byte matching")
            text = data.decode("utf-8", errors="ignore")
            binary_only = True
    else:
        text = data.decode("utf-8", errors="replace")

    info = analyze_manifest_text(text, package_name, binary_only)
    on_log(f"Package: {info.package_name}")
    on_log(f"Application class: {info.application_class or '<none>'}")
    if info.launch_activity:
        on_log(f"Launch activity: {info.launch_activity}")
    return info


def set_application_name(text: str, application_class: str) -> str:
    region = application_tag_region(text)
    if region is None:
        raise ManifestParseFailure("No <application> tag found in AndroidManifest.xml")

    start, end = region
    tag = text[start:end]
    replacement = f'android:name="{application_class}"'
    if ANDROID_NAME_RE.search(tag):
        tag = ANDROID_NAME_RE.sub(replacement, tag, count=1)
    else:
        tag = tag.replace("<application", f"<application {replacement}", 1)
    return text[:start] + tag + text[end:]


def patch_text_manifest(manifest_path: str, info: ManifestInfo, application_class: str) -> str:
    if not info.textually_patchable:
        raise ManifestParseFailure("Manifest is binary and could not be converted; text patching impossible")

    patched = set_application_name(info.text, application_class)
    with open(manifest_path, "w", encoding="utf-8") as f:
        f.write(patched)
    return patched


def patch_binary_manifest(
    original_apk: str,
    application_class: str,
    work_dir: str,
    on_log: LogSink = print_log,
    timeout: Optional[float] = None,
) -> Optional[str]:
    """Rewrite the packed manifest's application name with the external editor.

    Returns the patched binary manifest path, or None when the editor is not
    installed or did not produce output.
    """
    editor = find_manifest_editor_cmd()
    if editor is None:
        on_log("Binary manifest editor not available")
        return None

    edit_dir = os.path.join(work_dir, "manifest-edit")
    os.makedirs(edit_dir, exist_ok=True)
    original_manifest = os.path.join(edit_dir, "AndroidManifest.xml")
    modified_manifest = os.path.join(edit_dir, "AndroidManifest_mod.xml")

    with zipfile.ZipFile(original_apk, "r") as zf, open(original_manifest, "wb") as out:
        out.write(zf.read("AndroidManifest.xml"))

    try:
        run_logged_command(
            editor + [original_manifest, "-an", application_class, "-o", modified_manifest],
            "ManifestEditor",
            on_log,
            timeout=timeout,
        )
    except (ToolFailure, ToolNotFound) as e:
        on_log(f"Binary manifest edit failed: {e}")
        return None

    if not os.path.exists(modified_manifest) or os.path.getsize(modified_manifest) == 0:
        on_log("ManifestEditor finished without producing output")
        return None
    return modified_manifest


def apply_application_override(
    original_apk: str,
    manifest_path: str,
    info: ManifestInfo,
    application_class: str,
    work_dir: str,
    on_log: LogSink = print_log,
    timeout: Optional[float] = None,
    allow_text: bool = True,
) -> ManifestEdit:
    """Declare ``application_class`` in the manifest, binary edit first, text second.

    ``allow_text`` is False when resources were not decoded: apktool then copies
    the manifest verbatim and a text edit would never be recompiled.
    """
    on_log("Trying binary manifest edit...")
    binary_path = patch_binary_manifest(original_apk, application_class, work_dir, on_log, timeout)
    if binary_path:
        on_log("Binary manifest patched")
        return ManifestEdit("binary", application_class, binary_path)

    if not allow_text:
        raise ManifestParseFailure("Binary manifest edit failed and resources were not decoded for a text edit")

    on_log("Falling back to text manifest edit...")
    patch_text_manifest(manifest_path, info, application_class)
    on_log("Text manifest patched; change applies at recompile")
    return ManifestEdit("text", application_class)
