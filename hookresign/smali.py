"""Smali generation and patching for the package-manager signature hook.

Helper classes are fixed text with the certificate and package supplied at
runtime by the caller. Code injected into existing app methods is assembled
with :class:`SmaliBlock`, which hands out registers by name so every block
knows how many locals it needs before it is rendered.
"""
import os
import re
from typing import Optional

from hookresign.errors import NoInjectionTargetFound
from hookresign.models import InjectionPlan, InjectionSite, LogSink, SmaliPatch, print_log
from hookresign.planner import SITE_MIN_LOCALS, SYNTHETIC_APPLICATION_CLASS

RUNTIME_PACKAGE_PATH = "com/hookresign/runtime"
PROXY_CLASS = f"L{RUNTIME_PACKAGE_PATH}/PackageManagerProxy;"
HOOK_CLASS = f"L{RUNTIME_PACKAGE_PATH}/PackageManagerHook;"
INSTALL_METHOD = f"{HOOK_CLASS}->install(Landroid/content/Context;Ljava/lang/String;Ljava/lang/String;)V"
LOG_TAG = "HookResign"
BEGIN_MARKER = "# hookresign:begin"
END_MARKER = "# hookresign:end"

REGISTER_RE = re.compile(r"\bv(\d+)\b")
STRING_LITERAL_RE = re.compile(r'"(?:[^"\\]|\\.)*"')
LOCALS_RE = re.compile(r"^(\s*)\.(locals|registers)\s+(\d+)\s*$", re.MULTILINE)
SUPER_RE = re.compile(r"^\.super\s+(L[^;]+;)", re.MULTILINE)
WIDE_OR_OBJECT_RE = re.compile(r"\[*(?:L[^;]+;|[ZBSCIJFD])")

PROXY_TEMPLATE = f""".class public {PROXY_CLASS}
.super Ljava/lang/Object;
.source "PackageManagerProxy.java"

# interfaces
.implements Ljava/lang/reflect/InvocationHandler;


# instance fields
.field private final base:Ljava/lang/Object;

.field private final certificate:Ljava/lang/String;

.field private final packageName:Ljava/lang/String;


# direct methods
.method public constructor <init>(Ljava/lang/Object;Ljava/lang/String;Ljava/lang/String;)V
    .locals 0

    invoke-direct {{p0}}, Ljava/lang/Object;-><init>()V

    iput-object p1, p0, {PROXY_CLASS}->base:Ljava/lang/Object;

    iput-object p2, p0, {PROXY_CLASS}->certificate:Ljava/lang/String;

    iput-object p3, p0, {PROXY_CLASS}->packageName:Ljava/lang/String;

    return-void
.end method


# virtual methods
.method public invoke(Ljava/lang/Object;Ljava/lang/reflect/Method;[Ljava/lang/Object;)Ljava/lang/Object;
    .locals 4
    .annotation system Ldalvik/annotation/Throws;
        value = {{
            Ljava/lang/Throwable;
        }}
    .end annotation

    iget-object v0, p0, {PROXY_CLASS}->base:Ljava/lang/Object;

    :try_start_0
    invoke-virtual {{p2, v0, p3}}, Ljava/lang/reflect/Method;->invoke(Ljava/lang/Object;[Ljava/lang/Object;)Ljava/lang/Object;

    move-result-object v0
    :try_end_0
    .catch Ljava/lang/reflect/InvocationTargetException; {{:try_start_0 .. :try_end_0}} :catch_0

    const-string v1, "getPackageInfo"

    invoke-virtual {{p2}}, Ljava/lang/reflect/Method;->getName()Ljava/lang/String;

    move-result-object v2

    invoke-virtual {{v1, v2}}, Ljava/lang/String;->equals(Ljava/lang/Object;)Z

    move-result v1

    if-eqz v1, :cond_done

    if-eqz p3, :cond_done

    array-length v1, p3

    const/4 v2, 0x2

    if-lt v1, v2, :cond_done

    const/4 v1, 0x0

    aget-object v1, p3, v1

    iget-object v2, p0, {PROXY_CLASS}->packageName:Ljava/lang/String;

    invoke-virtual {{v2, v1}}, Ljava/lang/String;->equals(Ljava/lang/Object;)Z

    move-result v1

    if-eqz v1, :cond_done

    const/4 v1, 0x1

    aget-object v1, p3, v1

    instance-of v2, v1, Ljava/lang/Number;

    if-eqz v2, :cond_done

    check-cast v1, Ljava/lang/Number;

    invoke-virtual {{v1}}, Ljava/lang/Number;->intValue()I

    move-result v1

    # PackageManager.GET_SIGNATURES
    and-int/lit8 v1, v1, 0x40

    if-eqz v1, :cond_done

    if-eqz v0, :cond_done

    move-object v1, v0

    check-cast v1, Landroid/content/pm/PackageInfo;

    iget-object v2, v1, Landroid/content/pm/PackageInfo;->signatures:[Landroid/content/pm/Signature;

    if-eqz v2, :cond_done

    array-length v3, v2

    if-eqz v3, :cond_done

    new-instance v3, Landroid/content/pm/Signature;

    iget-object v1, p0, {PROXY_CLASS}->certificate:Ljava/lang/String;

    invoke-direct {{v3, v1}}, Landroid/content/pm/Signature;-><init>(Ljava/lang/String;)V

    const/4 v1, 0x0

    aput-object v3, v2, v1

    :cond_done
    return-object v0

    :catch_0
    move-exception v0

    invoke-virtual {{v0}}, Ljava/lang/reflect/InvocationTargetException;->getCause()Ljava/lang/Throwable;

    move-result-object v0

    throw v0
.end method
"""

HOOK_TEMPLATE = f""".class public {HOOK_CLASS}
.super Ljava/lang/Object;
.source "PackageManagerHook.java"


# direct methods
.method public constructor <init>()V
    .locals 0

    invoke-direct {{p0}}, Ljava/lang/Object;-><init>()V

    return-void
.end method

.method public static install(Landroid/content/Context;Ljava/lang/String;Ljava/lang/String;)V
    .locals 8

    const-string v0, "{LOG_TAG}"

    const-string v1, "installing package manager proxy"

    invoke-static {{v0, v1}}, Landroid/util/Log;->d(Ljava/lang/String;Ljava/lang/String;)I

    :try_start_0
    const-string v0, "android.app.ActivityThread"

    invoke-static {{v0}}, Ljava/lang/Class;->forName(Ljava/lang/String;)Ljava/lang/Class;

    move-result-object v0

    const-string v1, "currentActivityThread"

    const/4 v2, 0x0

    new-array v3, v2, [Ljava/lang/Class;

    invoke-virtual {{v0, v1, v3}}, Ljava/lang/Class;->getDeclaredMethod(Ljava/lang/String;[Ljava/lang/Class;)Ljava/lang/reflect/Method;

    move-result-object v1

    new-array v3, v2, [Ljava/lang/Object;

    const/4 v4, 0x0

    invoke-virtual {{v1, v4, v3}}, Ljava/lang/reflect/Method;->invoke(Ljava/lang/Object;[Ljava/lang/Object;)Ljava/lang/Object;

    move-result-object v1

    const-string v3, "sPackageManager"

    invoke-virtual {{v0, v3}}, Ljava/lang/Class;->getDeclaredField(Ljava/lang/String;)Ljava/lang/reflect/Field;

    move-result-object v0

    const/4 v3, 0x1

    invoke-virtual {{v0, v3}}, Ljava/lang/reflect/Field;->setAccessible(Z)V

    invoke-virtual {{v0, v1}}, Ljava/lang/reflect/Field;->get(Ljava/lang/Object;)Ljava/lang/Object;

    move-result-object v4

    const-string v5, "android.content.pm.IPackageManager"

    invoke-static {{v5}}, Ljava/lang/Class;->forName(Ljava/lang/String;)Ljava/lang/Class;

    move-result-object v5

    invoke-virtual {{v5}}, Ljava/lang/Class;->getClassLoader()Ljava/lang/ClassLoader;

    move-result-object v6

    new-array v7, v3, [Ljava/lang/Class;

    aput-object v5, v7, v2

    new-instance v5, {PROXY_CLASS}

    invoke-direct {{v5, v4, p1, p2}}, {PROXY_CLASS}-><init>(Ljava/lang/Object;Ljava/lang/String;Ljava/lang/String;)V

    invoke-static {{v6, v7, v5}}, Ljava/lang/reflect/Proxy;->newProxyInstance(Ljava/lang/ClassLoader;[Ljava/lang/Class;Ljava/lang/reflect/InvocationHandler;)Ljava/lang/Object;

    move-result-object v5

    invoke-virtual {{v0, v1, v5}}, Ljava/lang/reflect/Field;->set(Ljava/lang/Object;Ljava/lang/Object;)V

    if-eqz p0, :cond_installed

    invoke-virtual {{p0}}, Landroid/content/Context;->getPackageManager()Landroid/content/pm/PackageManager;

    move-result-object v6

    invoke-virtual {{v6}}, Ljava/lang/Object;->getClass()Ljava/lang/Class;

    move-result-object v7

    const-string v0, "mPM"

    invoke-virtual {{v7, v0}}, Ljava/lang/Class;->getDeclaredField(Ljava/lang/String;)Ljava/lang/reflect/Field;

    move-result-object v0

    invoke-virtual {{v0, v3}}, Ljava/lang/reflect/Field;->setAccessible(Z)V

    invoke-virtual {{v0, v6, v5}}, Ljava/lang/reflect/Field;->set(Ljava/lang/Object;Ljava/lang/Object;)V

    :cond_installed
    const-string v0, "{LOG_TAG}"

    const-string v1, "package manager proxy installed"

    invoke-static {{v0, v1}}, Landroid/util/Log;->d(Ljava/lang/String;Ljava/lang/String;)I
    :try_end_0
    .catch Ljava/lang/Exception; {{:try_start_0 .. :try_end_0}} :catch_0

    return-void

    :catch_0
    move-exception v0

    const-string v1, "{LOG_TAG}"

    const-string v2, "failed to install package manager proxy"

    invoke-static {{v1, v2, v0}}, Landroid/util/Log;->e(Ljava/lang/String;Ljava/lang/String;Ljava/lang/Throwable;)I

    return-void
.end method
"""


def smali_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def class_descriptor(class_name: str) -> str:
    return "L" + class_name.replace(".", "/") + ";"


def referenced_locals(code: str) -> set[int]:
    """Indices of the vN registers referenced by ``code``, ignoring string literals."""
    return {int(index) for index in REGISTER_RE.findall(STRING_LITERAL_RE.sub('""', code))}


def required_locals(code: str) -> int:
    indices = referenced_locals(code)
    return max(indices) + 1 if indices else 0


class SmaliBlock:
    """Instruction list with a named register allocator.

    ``reg(name)`` returns the same vN for the same name. Emitting a line that
    references a register the block never allocated raises ValueError.
    """

    def __init__(self, marker: bool = True):
        self._registers: dict[str, int] = {}
        self._lines: list[str] = []
        self._marker = marker

    def reg(self, name: str) -> str:
        if name not in self._registers:
            self._registers[name] = len(self._registers)
        return f"v{self._registers[name]}"

    def emit(self, line: str) -> "SmaliBlock":
        unknown = {index for index in referenced_locals(line) if index >= len(self._registers)}
        if unknown:
            raise ValueError(f"Unallocated registers {sorted(unknown)} in: {line}")
        self._lines.append(line)
        return self

    def label(self, name: str) -> "SmaliBlock":
        self._lines.append(f":{name}")
        return self

    @property
    def locals_required(self) -> int:
        return len(self._registers)

    def render(self, indent: str = "    ") -> str:
        lines = self._lines
        if self._marker:
            lines = [BEGIN_MARKER, *lines, END_MARKER]
        return "\n".join(f"{indent}{line}" for line in lines) + "\n"


def _log_call(block: SmaliBlock, tag_reg: str, message_reg: str, message: str) -> None:
    block.emit(f"const-string {tag_reg}, {smali_string(LOG_TAG)}")
    block.emit(f"const-string {message_reg}, {smali_string(message)}")
    block.emit(f"invoke-static {{{tag_reg}, {message_reg}}}, Landroid/util/Log;->d(Ljava/lang/String;Ljava/lang/String;)I")


def _install_call(block: SmaliBlock, context_reg: str, cert_reg: str, package_reg: str, cert_hex: str, package_name: str) -> None:
    block.emit(f"const-string {cert_reg}, {smali_string(cert_hex)}")
    block.emit(f"const-string {package_reg}, {smali_string(package_name)}")
    block.emit(f"invoke-static {{{context_reg}, {cert_reg}, {package_reg}}}, {INSTALL_METHOD}")


def build_direct_call(cert_hex: str, package_name: str, context_reg: str = "p1") -> SmaliBlock:
    block = SmaliBlock()
    first, second = block.reg("first"), block.reg("second")
    _log_call(block, first, second, "attachBaseContext hook")
    _install_call(block, context_reg, first, second, cert_hex, package_name)
    return block


def build_provider_call(cert_hex: str, package_name: str) -> SmaliBlock:
    block = SmaliBlock()
    first, second, context = block.reg("first"), block.reg("second"), block.reg("context")
    _log_call(block, first, second, "content provider hook")
    block.emit("invoke-virtual {p0}, Landroid/content/ContentProvider;->getContext()Landroid/content/Context;")
    block.emit(f"move-result-object {context}")
    _install_call(block, context, first, second, cert_hex, package_name)
    return block


def build_static_initializer_call(cert_hex: str, package_name: str) -> SmaliBlock:
    """No Context exists at class load; ask ActivityThread for the Application."""
    block = SmaliBlock()
    context, first, second, array = (
        block.reg("context"), block.reg("first"), block.reg("second"), block.reg("array")
    )
    _log_call(block, first, second, "static initializer hook")
    block.label("hookresign_try_start")
    block.emit(f"const-string {context}, {smali_string('android.app.ActivityThread')}")
    block.emit(f"invoke-static {{{context}}}, Ljava/lang/Class;->forName(Ljava/lang/String;)Ljava/lang/Class;")
    block.emit(f"move-result-object {context}")
    block.emit(f"const-string {first}, {smali_string('currentApplication')}")
    block.emit(f"const/4 {second}, 0x0")
    block.emit(f"new-array {array}, {second}, [Ljava/lang/Class;")
    block.emit(
        f"invoke-virtual {{{context}, {first}, {array}}}, "
        "Ljava/lang/Class;->getDeclaredMethod(Ljava/lang/String;[Ljava/lang/Class;)Ljava/lang/reflect/Method;"
    )
    block.emit(f"move-result-object {context}")
    block.emit(f"const/4 {first}, 0x0")
    block.emit(f"new-array {array}, {second}, [Ljava/lang/Object;")
    block.emit(
        f"invoke-virtual {{{context}, {first}, {array}}}, "
        "Ljava/lang/reflect/Method;->invoke(Ljava/lang/Object;[Ljava/lang/Object;)Ljava/lang/Object;"
    )
    block.emit(f"move-result-object {context}")
    block.emit(f"check-cast {context}, Landroid/content/Context;")
    block.label("hookresign_try_end")
    block.emit(".catch Ljava/lang/Exception; {:hookresign_try_start .. :hookresign_try_end} :hookresign_catch")
    block.emit("goto :hookresign_install")
    block.label("hookresign_catch")
    block.emit(f"move-exception {context}")
    block.emit(f"const-string {first}, {smali_string(LOG_TAG)}")
    block.emit(f"const-string {second}, {smali_string('no application context in static initializer')}")
    block.emit(
        f"invoke-static {{{first}, {second}, {context}}}, "
        "Landroid/util/Log;->e(Ljava/lang/String;Ljava/lang/String;Ljava/lang/Throwable;)I"
    )
    block.emit(f"const/4 {context}, 0x0")
    block.label("hookresign_install")
    _install_call(block, context, first, second, cert_hex, package_name)
    return block


def build_injection_block(site: InjectionSite, cert_hex: str, package_name: str) -> SmaliBlock:
    if site is InjectionSite.ATTACH_BASE_CONTEXT:
        return build_direct_call(cert_hex, package_name)
    if site is InjectionSite.PROVIDER_ON_CREATE:
        return build_provider_call(cert_hex, package_name)
    return build_static_initializer_call(cert_hex, package_name)


def locals_for(site: InjectionSite, block: SmaliBlock) -> int:
    return max(SITE_MIN_LOCALS[site], block.locals_required)


def parameter_registers(method: str, is_static: bool) -> int:
    params = method[method.index("(") + 1:method.index(")")]
    count = 0 if is_static else 1
    for token in WIDE_OR_OBJECT_RE.findall(params):
        count += 2 if token in ("J", "D") else 1
    return count


def index_smali_classes(decoded_dir: str) -> dict[str, str]:
    """Map dotted class name -> smali file across every smali* directory."""
    classes: dict[str, str] = {}
    for entry in sorted(os.listdir(decoded_dir)):
        root_dir = os.path.join(decoded_dir, entry)
        if not entry.startswith("smali") or not os.path.isdir(root_dir):
            continue
        for root, _, files in os.walk(root_dir):
            for file in files:
                if not file.endswith(".smali"):
                    continue
                path = os.path.join(root, file)
                relative = os.path.relpath(path, root_dir)[: -len(".smali")]
                classes.setdefault(relative.replace(os.sep, "."), path)
    return classes


def find_smali_file(decoded_dir: str, class_name: str) -> Optional[str]:
    relative = class_name.replace(".", "/") + ".smali"
    for entry in sorted(os.listdir(decoded_dir)):
        if not entry.startswith("smali"):
            continue
        candidate = os.path.join(decoded_dir, entry, relative)
        if os.path.isfile(candidate):
            return candidate
    return None


def _find_method(content: str, method: str) -> Optional[tuple[int, int]]:
    pattern = re.compile(r"^\.method\b[^\n]*\s" + re.escape(method) + r"\s*$", re.MULTILINE)
    match = pattern.search(content)
    if not match:
        return None
    end = content.find(".end method", match.end())
    if end == -1:
        raise NoInjectionTargetFound(f"Unterminated method {method}")
    return match.start(), end


def _raise_register_count(header_line: re.Match, needed_locals: int, param_count: int) -> tuple[str, int]:
    indent, directive, value = header_line.group(1), header_line.group(2), int(header_line.group(3))
    if directive == "locals":
        new_value = max(value, needed_locals)
        return f"{indent}.locals {new_value}", new_value
    new_value = max(value, needed_locals + param_count)
    return f"{indent}.registers {new_value}", new_value - param_count


def _new_method(plan: InjectionPlan, block: SmaliBlock, locals_count: int, super_class: str) -> str:
    body = block.render()
    if plan.site is InjectionSite.ATTACH_BASE_CONTEXT:
        return (
            f".method protected {plan.target_method}\n"
            f"    .locals {locals_count}\n\n"
            f"{body}\n"
            f"    invoke-super {{p0, p1}}, {super_class}->{plan.target_method}\n\n"
            "    return-void\n"
            ".end method\n"
        )
    if plan.site is InjectionSite.PROVIDER_ON_CREATE:
        return (
            f".method public {plan.target_method}\n"
            f"    .locals {locals_count}\n\n"
            f"{body}\n"
            f"    invoke-super {{p0}}, {super_class}->{plan.target_method}\n\n"
            "    move-result v0\n\n"
            "    return v0\n"
            ".end method\n"
        )
    return (
        f".method static constructor {plan.target_method}\n"
        f"    .locals {locals_count}\n\n"
        f"{body}\n"
        "    return-void\n"
        ".end method\n"
    )


def inject_into_smali(
    smali_path: str, plan: InjectionPlan, cert_hex: str, package_name: str, on_log: LogSink = print_log
) -> SmaliPatch:
    with open(smali_path, "r", encoding="utf-8") as f:
        content = f.read()

    block = build_injection_block(plan.site, cert_hex, package_name)
    needed = locals_for(plan.site, block)
    span = _find_method(content, plan.target_method)

    if span is None:
        super_match = SUPER_RE.search(content)
        super_class = super_match.group(1) if super_match else "Ljava/lang/Object;"
        method_text = _new_method(plan, block, needed, super_class)
        content = content.rstrip() + "\n\n" + ("# direct methods\n" if plan.site is InjectionSite.STATIC_INITIALIZER else "# virtual methods\n") + method_text
        with open(smali_path, "w", encoding="utf-8") as f:
            f.write(content)
        on_log(f"Created {plan.target_method} with .locals {needed}: {smali_path}")
        return SmaliPatch(smali_path, plan.target_method, block.render(), needed, created=True)

    start, end = span
    method_text = content[start:end]
    if BEGIN_MARKER in method_text:
        on_log(f"{plan.target_method} already instrumented: {smali_path}")
        declared = LOCALS_RE.search(method_text)
        count = int(declared.group(3)) if declared else needed
        return SmaliPatch(smali_path, plan.target_method, "", count)

    header_line = LOCALS_RE.search(method_text)
    if header_line is None:
        raise NoInjectionTargetFound(f"{plan.target_method} in {smali_path} declares no register count")

    is_static = " static " in method_text.splitlines()[0] + " "
    replacement, locals_count = _raise_register_count(
        header_line, needed, parameter_registers(plan.target_method, is_static)
    )
    method_text = (
        method_text[: header_line.start()]
        + replacement
        + "\n\n"
        + block.render()
        + method_text[header_line.end():]
    )
    content = content[:start] + method_text + content[end:]
    with open(smali_path, "w", encoding="utf-8") as f:
        f.write(content)

    on_log(f"Injected {plan.target_method} (.locals {locals_count}): {smali_path}")
    return SmaliPatch(smali_path, plan.target_method, block.render(), locals_count)


def render_synthetic_application(cert_hex: str, package_name: str) -> tuple[str, int]:
    block = build_direct_call(cert_hex, package_name)
    locals_count = locals_for(InjectionSite.ATTACH_BASE_CONTEXT, block)
    descriptor = class_descriptor(SYNTHETIC_APPLICATION_CLASS)
    text = (
        f".class public {descriptor}\n"
        ".super Landroid/app/Application;\n"
        '.source "HookApplication.java"\n\n\n'
        "# direct methods\n"
        ".method public constructor <init>()V\n"
        "    .locals 0\n\n"
        "    invoke-direct {p0}, Landroid/app/Application;-><init>()V\n\n"
        "    return-void\n"
        ".end method\n\n\n"
        "# virtual methods\n"
        ".method protected attachBaseContext(Landroid/content/Context;)V\n"
        f"    .locals {locals_count}\n\n"
        f"{block.render()}\n"
        "    invoke-super {p0, p1}, Landroid/app/Application;->attachBaseContext(Landroid/content/Context;)V\n\n"
        "    return-void\n"
        ".end method\n"
    )
    return text, locals_count


def write_synthetic_application(decoded_dir: str, cert_hex: str, package_name: str) -> SmaliPatch:
    """Generate the synthetic Application in the primary partition."""
    relative = SYNTHETIC_APPLICATION_CLASS.replace(".", "/") + ".smali"
    path = os.path.join(decoded_dir, "smali", relative)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    text, locals_count = render_synthetic_application(cert_hex, package_name)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return SmaliPatch(path, "attachBaseContext(Landroid/content/Context;)V", text, locals_count, created=True)


def write_helper_classes(partition_dir: str) -> list[str]:
    target_dir = os.path.join(partition_dir, *RUNTIME_PACKAGE_PATH.split("/"))
    os.makedirs(target_dir, exist_ok=True)
    written = []
    for name, text in (("PackageManagerProxy.smali", PROXY_TEMPLATE), ("PackageManagerHook.smali", HOOK_TEMPLATE)):
        path = os.path.join(target_dir, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        written.append(path)
    return written
