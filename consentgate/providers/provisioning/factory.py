from __future__ import annotations

from consentgate.core.config import get_settings
from consentgate.core.errors import NotConfiguredError
from consentgate.providers.provisioning.base import ProvisioningBackend
from consentgate.providers.provisioning.cloudformation import CloudFormationBackend
from consentgate.providers.provisioning.fake import FakeProvisioningBackend


_backend: ProvisioningBackend | None = None
_override: ProvisioningBackend | None = None


def get_provisioning_backend() -> ProvisioningBackend:
    # Share one backend per process so the driver and status reads see the same client state.
    global _backend
    if _override is not None:
        return _override
    if _backend is not None:
        return _backend
    settings = get_settings()
    provider = (settings.provisioning_backend or "cloudformation").lower()
    if provider == "cloudformation":
        _backend = CloudFormationBackend()
    elif provider == "fake":
        _backend = FakeProvisioningBackend()
    else:
        raise NotConfiguredError(f"Unsupported provisioning backend: {provider}")
    return _backend


def override_provisioning_backend(backend: ProvisioningBackend) -> None:
    global _override
    _override = backend


def reset_provisioning_backend() -> None:
    # Drop cached and overridden backends so the next call rereads settings.
    global _backend, _override
    _backend = None
    _override = None
