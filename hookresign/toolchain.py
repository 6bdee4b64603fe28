import os
import shutil
import subprocess
import threading
import urllib.error
import urllib.request
import zipfile
from typing import Optional, Sequence, Tuple, Union

from hookresign.errors import ResignError, ToolFailure, ToolNotFound
from hookresign.models import LogSink, print_log

TOOLCHAIN_SUBDIR = "toolchain"
APKTOOL_VERSION = os.environ.get("APKTOOL_VERSION", "2.11.1")
APKTOOL_JAR_URL = (
    f"https://github.com/iBotPeaches/Apktool/releases/download/v{APKTOOL_VERSION}/apktool_{APKTOOL_VERSION}.jar"
)
MANIFEST_EDITOR_JAR = "ManifestEditor-2.0.jar"
TOOL_DOWNLOAD_RETRIES = int(os.environ.get("TOOL_DOWNLOAD_RETRIES", "3"))
TOOL_DOWNLOAD_TIMEOUT = int(os.environ.get("TOOL_DOWNLOAD_TIMEOUT", "60"))
DEFAULT_TOOL_TIMEOUT = 600.0
OUTPUT_TAIL_LINES = 120
SECRET_FLAGS = ("--ks-pass", "--key-pass", "-storepass", "-keypass", "--ksPass", "--ksKeyPass")


def get_toolchain_dir() -> str:
    env_dir = os.environ.get("HOOKRESIGN_TOOLCHAIN_DIR")
    if env_dir:
        path = os.path.expanduser(env_dir)
        os.makedirs(path, exist_ok=True)
        return path

    path = os.path.join(os.path.expanduser("~/.hookresign"), TOOLCHAIN_SUBDIR)
    os.makedirs(path, exist_ok=True)
    return path


def resolve_tool_timeout(value: Optional[float] = None) -> Optional[float]:
    """Per-command deadline in seconds; ``None`` means no deadline."""
    if value is None:
        raw = os.environ.get("HOOKRESIGN_TOOL_TIMEOUT", "").strip()
        if not raw:
            value = DEFAULT_TOOL_TIMEOUT
        else:
            try:
                value = float(raw)
            except ValueError as e:
                raise ResignError(f"Invalid HOOKRESIGN_TOOL_TIMEOUT value: {raw!r}") from e
    return value if value > 0 else None


def format_bytes(size: int) -> str:
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)}{unit}"
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{int(size)}B"


def resolve_download_urls(primary_url: str, env_var: str) -> list[str]:
    raw = os.environ.get(env_var, "").strip()
    urls: list[str] = []
    if raw:
        for item in raw.split(","):
            candidate = item.strip()
            if candidate:
                urls.append(candidate)

    if primary_url not in urls:
        urls.append(primary_url)

    return urls


def download_with_url_fallback(
    urls: Sequence[str], target_path: str, on_log: LogSink = print_log, retries: int = TOOL_DOWNLOAD_RETRIES
) -> None:
    errors: list[str] = []
    for url in urls:
        try:
            download_file_with_retries(url, target_path, on_log=on_log, retries=retries)
            return
        except Exception as error:
            errors.append(f"{url} -> {error}")
            on_log(f"[toolchain] source-failed {url} reason={error}")

    raise ToolNotFound(
        "All download sources failed for "
        f"{os.path.basename(target_path)}: {' | '.join(errors)}"
    )


def download_file_with_retries(
    url: str, target_path: str, on_log: LogSink = print_log, retries: int = TOOL_DOWNLOAD_RETRIES
) -> None:
    target_name = os.path.basename(target_path)

    for attempt in range(1, retries + 1):
        temp_path = f"{target_path}.{os.getpid()}.{threading.get_ident()}.part"
        try:
            on_log(f"[toolchain] download-start {target_name} attempt={attempt}/{retries}")

            with urllib.request.urlopen(url, timeout=TOOL_DOWNLOAD_TIMEOUT) as response, open(temp_path, "wb") as output:
                content_length_header = response.headers.get("Content-Length")
                total_bytes = int(content_length_header) if content_length_header else 0
                downloaded_bytes = 0

                while True:
                    chunk = response.read(1024 * 256)
                    if not chunk:
                        break
                    output.write(chunk)
                    downloaded_bytes += len(chunk)

                if total_bytes > 0 and downloaded_bytes < total_bytes:
                    raise urllib.error.ContentTooShortError(
                        f"retrieval incomplete: got only {downloaded_bytes} out of {total_bytes} bytes",
                        None,
                    )

            # Concurrent jobs may race on the same jar; the rename is atomic.
            os.replace(temp_path, target_path)
            on_log(f"[toolchain] download-done {target_name} ({format_bytes(downloaded_bytes)})")
            return
        except Exception as error:
            if os.path.exists(temp_path):
                os.remove(temp_path)

            if attempt < retries:
                on_log(
                    f"[toolchain] download-retry {target_name} "
                    f"attempt={attempt}/{retries} reason={error}"
                )
                continue

            raise RuntimeError(
                f"Failed to download {target_name} after {retries} attempts: {error}"
            ) from error


def ensure_downloaded_file(
    url_or_urls: Union[str, Sequence[str]], target_path: str, on_log: LogSink = print_log
) -> str:
    os.makedirs(os.path.dirname(target_path), exist_ok=True)

    if is_valid_jar_file(target_path):
        return target_path
    if os.path.exists(target_path):
        on_log(f"[toolchain] detected corrupt jar, re-downloading: {target_path}")
        os.remove(target_path)

    urls = [url_or_urls] if isinstance(url_or_urls, str) else list(url_or_urls)
    on_log(f"[toolchain] downloading {os.path.basename(target_path)} from {urls[0]}")
    download_with_url_fallback(urls, target_path, on_log=on_log)

    if not is_valid_jar_file(target_path):
        raise ToolNotFound(f"Downloaded file is invalid and could not be validated: {target_path}")

    return target_path


def is_executable_file(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def is_valid_jar_file(path: str) -> bool:
    if not os.path.isfile(path):
        return False
    if not zipfile.is_zipfile(path):
        return False

    try:
        with zipfile.ZipFile(path, "r") as jar_file:
            bad_entry = jar_file.testzip()
            return bad_entry is None
    except (zipfile.BadZipFile, OSError):
        return False


def _is_usable(command: list[str]) -> bool:
    try:
        result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        return result.returncode == 0
    except OSError:
        return False


JDK_CANDIDATE_HOMES = [
    "/opt/homebrew/opt/openjdk@21",
    "/opt/homebrew/opt/openjdk@17",
    "/opt/homebrew/opt/openjdk",
    "/usr/local/opt/openjdk@21",
    "/usr/local/opt/openjdk@17",
    "/usr/local/opt/openjdk",
    "/usr/lib/jvm/default-java",
]


def find_jdk_tool(tool_name: str, probe_args: Sequence[str]) -> str:
    """Locate a JDK executable (java, keytool, jarsigner)."""
    java_home = os.environ.get("JAVA_HOME")
    if java_home:
        candidate = os.path.join(java_home, "bin", tool_name)
        if is_executable_file(candidate) and _is_usable([candidate, *probe_args]):
            return candidate

    in_path = shutil.which(tool_name)
    if in_path and _is_usable([in_path, *probe_args]):
        return in_path

    for home in JDK_CANDIDATE_HOMES:
        candidate = os.path.join(home, "bin", tool_name)
        if is_executable_file(candidate) and _is_usable([candidate, *probe_args]):
            return candidate

    raise ToolNotFound(
        f"{tool_name} not found or unusable. Please install JDK 17+ and set JAVA_HOME if needed."
    )


def find_java_cmd() -> str:
    return find_jdk_tool("java", ["-version"])


def find_keytool_cmd() -> str:
    return find_jdk_tool("keytool", ["-help"])


def find_jarsigner_cmd() -> str:
    return find_jdk_tool("jarsigner", ["-help"])


def sdk_roots() -> list[str]:
    roots = [
        os.environ.get("ANDROID_SDK_ROOT"),
        os.environ.get("ANDROID_HOME"),
        os.path.expanduser("~/Library/Android/sdk"),
        os.path.expanduser("~/Android/Sdk"),
        "/usr/local/lib/android/sdk",
    ]
    result = []
    for root in roots:
        if root and os.path.isdir(root):
            result.append(root)
    return result


def find_android_build_tool(tool_name: str) -> Optional[str]:
    toolchain_dir = get_toolchain_dir()
    managed_candidates = [
        os.path.join(toolchain_dir, "bin", tool_name),
        os.path.join(toolchain_dir, tool_name),
    ]
    for candidate in managed_candidates:
        if is_executable_file(candidate):
            return candidate

    in_path = shutil.which(tool_name)
    if in_path:
        return in_path

    candidates: list[Tuple[Tuple[int, ...], str]] = []
    for root in sdk_roots():
        build_tools_dir = os.path.join(root, "build-tools")
        if not os.path.isdir(build_tools_dir):
            continue

        for version in os.listdir(build_tools_dir):
            tool_path = os.path.join(build_tools_dir, version, tool_name)
            if is_executable_file(tool_path):
                parsed = tuple(int(p) if p.isdigit() else 0 for p in version.replace("-", ".").split("."))
                candidates.append((parsed, tool_path))

    if not candidates:
        return None

    candidates.sort(key=lambda item: item[0])
    return candidates[-1][1]


def ensure_apktool_cmd(on_log: LogSink = print_log) -> list[str]:
    toolchain_dir = get_toolchain_dir()

    bundled_candidates = [
        os.path.join(toolchain_dir, "bin", "apktool"),
        os.path.join(toolchain_dir, "apktool"),
    ]
    for candidate in bundled_candidates:
        if is_executable_file(candidate):
            return [candidate]

    apktool = shutil.which("apktool")
    if apktool:
        return [apktool]

    java = find_java_cmd()
    apktool_jar = os.path.join(toolchain_dir, f"apktool-{APKTOOL_VERSION}.jar")
    ensure_downloaded_file(resolve_download_urls(APKTOOL_JAR_URL, "HOOKRESIGN_APKTOOL_URLS"), apktool_jar, on_log)
    return [java, "-jar", apktool_jar]


def find_manifest_editor_cmd() -> Optional[list[str]]:
    """Binary manifest editor command, or None when it is not installed."""
    configured = os.environ.get("HOOKRESIGN_MANIFEST_EDITOR")
    candidates = [configured] if configured else []
    candidates.append(os.path.join(get_toolchain_dir(), MANIFEST_EDITOR_JAR))

    for candidate in candidates:
        if not is_valid_jar_file(candidate):
            continue
        try:
            return [find_java_cmd(), "-jar", candidate]
        except ToolNotFound:
            return None
    return None


def mask_command(command: Sequence[str]) -> str:
    masked: list[str] = []
    hide_next = False
    for part in command:
        if hide_next:
            masked.append("pass:***" if part.startswith("pass:") else "***")
            hide_next = False
            continue
        masked.append(part)
        hide_next = part in SECRET_FLAGS
    return " ".join(masked)


def tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(text.splitlines()[-lines:])


def run_logged_command(
    command: list[str],
    action: str,
    on_log: LogSink = print_log,
    timeout: Optional[float] = None,
    cwd: Optional[str] = None,
    echo_output: bool = True,
) -> str:
    """Run an external tool, forwarding each output line to ``on_log`` as it arrives.

    stderr is merged into stdout. The child is killed once ``timeout`` seconds
    pass. Returns the combined output; raises ``ToolFailure`` on a non-zero
    exit or timeout and ``ToolNotFound`` when the executable is missing.
    """
    on_log(f"Executing: {mask_command(command)}")
    try:
        process = subprocess.Popen(
            command,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
    except FileNotFoundError as error:
        raise ToolNotFound(f"{action}: executable not found: {command[0]}") from error

    timed_out = threading.Event()

    def _kill() -> None:
        timed_out.set()
        process.kill()

    timer = threading.Timer(timeout, _kill) if timeout else None
    if timer:
        timer.start()

    collected: list[str] = []
    try:
        for line in process.stdout:
            line = line.rstrip("\n")
            collected.append(line)
            if echo_output and line.strip():
                on_log(line)
        returncode = process.wait()
    finally:
        if timer:
            timer.cancel()
        if process.stdout is not None:
            process.stdout.close()

    output = "\n".join(collected)
    if timed_out.is_set():
        raise ToolFailure(
            f"{action} timed out after {timeout:g}s. command={mask_command(command)}",
            command=command,
            output=output,
        )
    if returncode != 0:
        raise ToolFailure(
            f"{action} failed (exit {returncode}). command={mask_command(command)}\n"
            f"--- output (tail) ---\n{tail(output)}",
            command=command,
            output=output,
        )
    return output

