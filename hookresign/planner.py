from typing import AbstractSet, Iterator

from hookresign.errors import NoInjectionTargetFound
from hookresign.manifest import ManifestInfo
from hookresign.models import InjectionPlan, InjectionSite, Strategy

SYNTHETIC_APPLICATION_CLASS = "com.hookresign.runtime.HookApplication"

ATTACH_BASE_CONTEXT = "attachBaseContext(Landroid/content/Context;)V"
STATIC_INITIALIZER = "<clinit>()V"
PROVIDER_ON_CREATE = "onCreate()Z"

# Registers each site needs for its injected block.
SITE_MIN_LOCALS = {
    InjectionSite.ATTACH_BASE_CONTEXT: 2,
    InjectionSite.PROVIDER_ON_CREATE: 3,
    InjectionSite.STATIC_INITIALIZER: 6,
}


def _plan(strategy: Strategy, target_class: str, site: InjectionSite) -> InjectionPlan:
    method = {
        InjectionSite.ATTACH_BASE_CONTEXT: ATTACH_BASE_CONTEXT,
        InjectionSite.STATIC_INITIALIZER: STATIC_INITIALIZER,
        InjectionSite.PROVIDER_ON_CREATE: PROVIDER_ON_CREATE,
    }[site]
    return InjectionPlan(strategy, target_class, method, site, SITE_MIN_LOCALS[site])


def candidate_plans(
    manifest: ManifestInfo, known_classes: AbstractSet[str], manifest_patchable: bool = True
) -> Iterator[InjectionPlan]:
    """Yield every viable injection plan, most preferred first."""
    app_class = manifest.application_class
    if app_class and app_class in known_classes:
        yield _plan(Strategy.APPLICATION_HOOK, app_class, InjectionSite.ATTACH_BASE_CONTEXT)

    # Replacing a declared Application we could not locate would drop it from the app.
    if not app_class and manifest_patchable:
        yield _plan(Strategy.MANIFEST_SYNTHESIS, SYNTHETIC_APPLICATION_CLASS, InjectionSite.ATTACH_BASE_CONTEXT)

    if manifest.launch_activity and manifest.launch_activity in known_classes:
        yield _plan(Strategy.ACTIVITY_FALLBACK, manifest.launch_activity, InjectionSite.STATIC_INITIALIZER)
    elif manifest.content_provider and manifest.content_provider in known_classes:
        yield _plan(Strategy.ACTIVITY_FALLBACK, manifest.content_provider, InjectionSite.PROVIDER_ON_CREATE)


def plan_injection(
    manifest: ManifestInfo, known_classes: AbstractSet[str], manifest_patchable: bool = True
) -> InjectionPlan:
    for plan in candidate_plans(manifest, known_classes, manifest_patchable):
        return plan
    raise NoInjectionTargetFound(
        "No injection target: no usable Application class, manifest cannot be patched, "
        "and no launch Activity or content provider was found"
    )
