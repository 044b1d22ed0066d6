"""Virtual machine operations and the derivation of VM create parameters."""

from __future__ import annotations

import base64
import logging
import re
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from azmachine.virtualnetworks import ResourceNotFoundError, ServiceScope

_logger = logging.getLogger(__name__)

DEFAULT_USER_NAME = "capi"

OS_TYPE_WINDOWS = "Windows"
OS_TYPE_LINUX = "Linux"

PRIORITY_SPOT = "Spot"
PRIORITY_REGULAR = "Regular"
EVICTION_POLICY_DEALLOCATE = "Deallocate"
EVICTION_POLICY_DELETE = "Delete"

STORAGE_ACCOUNT_ULTRA_SSD_LRS = "UltraSSD_LRS"
STORAGE_ACCOUNT_PREMIUM_LRS = "Premium_LRS"

CACHING_TYPE_NONE = "None"
CACHING_TYPE_READ_ONLY = "ReadOnly"
CACHING_TYPE_READ_WRITE = "ReadWrite"

DISK_DELETION_POLICY_DELETE = "Delete"
DISK_DELETION_POLICY_DETACH = "Detach"

ULTRA_SSD_CAPABILITY_ENABLED = "Enabled"
ULTRA_SSD_CAPABILITY_DISABLED = "Disabled"

IMAGE_TYPE_MARKETPLACE_NO_PLAN = "MarketplaceNoPlan"
IMAGE_TYPE_MARKETPLACE_WITH_PLAN = "MarketplaceWithPlan"

_WIN_AUTO_LOGON_FORMAT = """<AutoLogon>
\t\t\t<Username>{username}</Username>
\t\t\t<Password>
\t\t\t\t<Value>{admin_secret}</Value>
\t\t\t</Password>
\t\t\t<Enabled>true</Enabled>
\t\t\t<LogonCount>1</LogonCount>
\t\t</AutoLogon>"""

_WIN_FIRST_LOGON_COMMANDS = """<FirstLogonCommands>
\t\t\t<SynchronousCommand>
\t\t\t\t<Description>Copy user data secret contents to init script</Description>
\t\t\t\t<CommandLine>cmd /c "copy C:\\AzureData\\CustomData.bin C:\\init.ps1"</CommandLine>
\t\t\t\t<Order>11</Order>
\t\t\t</SynchronousCommand>
\t\t\t<SynchronousCommand>
\t\t\t\t<Description>Launch init script</Description>
\t\t\t\t<CommandLine>powershell.exe -NonInteractive -ExecutionPolicy Bypass -File C:\\init.ps1</CommandLine>
\t\t\t\t<Order>12</Order>
\t\t\t</SynchronousCommand>
\t\t</FirstLogonCommands>"""

# Starts and ends with an alphanumeric; letters, digits, underscores, periods, hyphens inside.
_NAME_SUFFIX_PATTERN = re.compile(r"[a-zA-Z0-9](?:[\w.-]*[a-zA-Z0-9])?", re.ASCII)


class InvalidMachineConfigurationError(ValueError):
    """Raised when the machine configuration cannot be turned into a VM."""


@dataclass
class Image:
    """Source image of a virtual machine."""

    publisher: str = ""
    offer: str = ""
    sku: str = ""
    version: str = ""
    resource_id: str = ""
    type: str = ""


@dataclass
class OSDisk:
    """Operating system disk settings."""

    os_type: str = ""
    disk_size_gb: int = 0
    storage_account_type: str = ""
    disk_encryption_set_id: str | None = None
    caching_type: str = ""
    ephemeral_storage_location: str = ""


@dataclass
class DataDisk:
    """An additional data disk attached to the virtual machine."""

    name_suffix: str = ""
    disk_size_gb: int = 0
    lun: int = 0
    storage_account_type: str = ""
    disk_encryption_set_id: str | None = None
    caching_type: str = ""
    deletion_policy: str = ""


@dataclass
class SecurityProfile:
    """Security settings of the virtual machine."""

    encryption_at_host: bool | None = None


@dataclass
class SpotVMOptions:
    """Request for a spot instance, optionally with a maximum price."""

    max_price: str | float | Decimal | None = None


@dataclass
class VMSpec:
    """Input for get, create-or-update and delete of a virtual machine."""

    name: str
    nic_name: str = ""
    ssh_key_data: str = ""
    size: str = ""
    zone: str = ""
    image: Image = field(default_factory=Image)
    os_disk: OSDisk = field(default_factory=OSDisk)
    data_disks: list[DataDisk] = field(default_factory=list)
    custom_data: str = ""
    managed_identity: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    priority: str = ""
    eviction_policy: str = ""
    billing_profile: dict[str, Any] | None = None
    security_profile: SecurityProfile | None = None
    diagnostics_profile: dict[str, Any] | None = None
    ultra_ssd_capability: str = ""
    availability_set_name: str = ""


class _Poller(Protocol):
    def result(self) -> Any: ...


class _VirtualMachinesClient(Protocol):
    def get(self, resource_group: str, name: str, expand: str = ...) -> Any: ...

    def begin_create_or_update(
        self, resource_group: str, name: str, parameters: dict[str, Any]
    ) -> _Poller: ...

    def begin_delete(self, resource_group: str, name: str) -> _Poller: ...


def generate_random_string(n: int) -> str:
    """Return ``n`` secure random bytes as URL-safe base64."""
    return base64.urlsafe_b64encode(secrets.token_bytes(n)).decode("ascii")


def generate_ssh_public_key() -> str:
    """Generate a fresh RSA key and return its public half as an authorized-keys line."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public = private_key.public_key().public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    )
    return public.decode("ascii") + "\n"


def generate_os_profile(spec: VMSpec) -> dict[str, Any]:
    """Build the OS profile: admin account, Windows or Linux settings and custom data."""
    is_windows = spec.os_disk.os_type == OS_TYPE_WINDOWS
    ssh_key_data = spec.ssh_key_data
    if not ssh_key_data and not is_windows:
        ssh_key_data = generate_ssh_public_key()

    admin_secret = generate_random_string(32)
    profile: dict[str, Any] = {
        "computerName": spec.name,
        "adminUsername": DEFAULT_USER_NAME,
        "adminPassword": admin_secret,
    }

    if is_windows:
        profile["windowsConfiguration"] = {
            "enableAutomaticUpdates": False,
            "additionalUnattendContent": [
                {
                    "passName": "OobeSystem",
                    "componentName": "Microsoft-Windows-Shell-Setup",
                    "settingName": "AutoLogon",
                    "content": _WIN_AUTO_LOGON_FORMAT.format(
                        username=DEFAULT_USER_NAME, admin_secret=admin_secret
                    ),
                },
                {
                    "passName": "OobeSystem",
                    "componentName": "Microsoft-Windows-Shell-Setup",
                    "settingName": "FirstLogonCommands",
                    "content": _WIN_FIRST_LOGON_COMMANDS,
                },
            ],
        }
    elif ssh_key_data:
        profile["linuxConfiguration"] = {
            "ssh": {
                "publicKeys": [
                    {
                        "path": f"/home/{DEFAULT_USER_NAME}/.ssh/authorized_keys",
                        "keyData": ssh_key_data,
                    }
                ]
            }
        }

    if spec.custom_data:
        profile["customData"] = spec.custom_data
    return profile


def availability_set_id(
    subscription_id: str, resource_group: str, availability_set_name: str
) -> str:
    """Return the resource ID of an availability set."""
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Compute/availabilitySets/{availability_set_name}"
    )


def get_spot_vm_options(
    spot_vm_options: SpotVMOptions | None,
) -> tuple[str, str, dict[str, Any] | None]:
    """Return ``(priority, eviction_policy, billing_profile)`` for the spot options."""
    if spot_vm_options is None:
        return "", "", None

    billing_profile = None
    if spot_vm_options.max_price is not None:
        try:
            price_text = str(Decimal(str(spot_vm_options.max_price)))
        except InvalidOperation as exc:
            raise ValueError(f"invalid max price {spot_vm_options.max_price!r}") from exc
        if price_text:
            billing_profile = {"maxPrice": float(price_text)}

    # Deallocate is the only eviction policy supported for single-instance spot VMs.
    return PRIORITY_SPOT, EVICTION_POLICY_DEALLOCATE, billing_profile


def generate_image_plan(image: Image) -> dict[str, str] | None:
    """Return the purchase plan for third-party marketplace images, else None."""
    if not image.type or image.type == IMAGE_TYPE_MARKETPLACE_NO_PLAN:
        return None
    if not image.publisher or not image.sku or not image.offer:
        return None
    return {"publisher": image.publisher, "name": image.sku, "product": image.offer}


def generate_data_disk_name(vm_name: str, name_suffix: str) -> str:
    """Return the name of a data disk of a VM."""
    return f"{vm_name}_{name_suffix}"


def _invalid(disk_name: str, vm_name: str, detail: str) -> InvalidMachineConfigurationError:
    return InvalidMachineConfigurationError(
        f"failed to create Data Disk: {disk_name} for vm {vm_name}. {detail}"
    )


def generate_data_disks(spec: VMSpec) -> list[dict[str, Any]]:
    """Validate the spec's data disks and build their parameters."""
    seen_luns: set[int] = set()
    seen_names: set[str] = set()
    data_disks = []

    for disk in spec.data_disks:
        name = generate_data_disk_name(spec.name, disk.name_suffix)

        if len(name) > 80:
            raise _invalid(
                name,
                spec.name,
                "The overall disk name name must not exceed 80 chars in length. "
                "Check your `nameSuffix`.",
            )
        if not _NAME_SUFFIX_PATTERN.fullmatch(disk.name_suffix):
            raise _invalid(
                name,
                spec.name,
                "The nameSuffix can only contain letters, numbers, "
                "underscores, periods or hyphens. Check your `nameSuffix`.",
            )
        if disk.disk_size_gb < 4:
            raise _invalid(
                name,
                spec.name,
                f"`diskSizeGB`: {disk.disk_size_gb}, is invalid, "
                "disk size must be greater or equal than 4.",
            )
        if disk.name_suffix in seen_names:
            raise _invalid(
                name,
                spec.name,
                f"A Data Disk with `nameSuffix`: {disk.name_suffix}, already exists. "
                "`nameSuffix` must be unique.",
            )
        if disk.storage_account_type == STORAGE_ACCOUNT_ULTRA_SSD_LRS and disk.caching_type not in (
            CACHING_TYPE_NONE,
            "",
        ):
            raise _invalid(
                name,
                spec.name,
                f"`cachingType`: {disk.caching_type}, is not supported for Data Disk of "
                f'`storageAccountType`: "{STORAGE_ACCOUNT_ULTRA_SSD_LRS}". '
                f'Use `storageAccountType`: "{CACHING_TYPE_NONE}" instead.',
            )
        if not 0 <= disk.lun <= 63:
            raise _invalid(
                name,
                spec.name,
                f"Invalid value `lun`: {disk.lun}. `lun` cannot be lower than 0 or higher than 63.",
            )
        if disk.lun in seen_luns:
            raise _invalid(
                name,
                spec.name,
                f"A Data Disk with `lun`: {disk.lun}, already exists. `lun` must be unique.",
            )
        if disk.deletion_policy not in (DISK_DELETION_POLICY_DELETE, DISK_DELETION_POLICY_DETACH):
            raise _invalid(
                name,
                spec.name,
                f'Invalid value `deletionPolicy`: "{disk.deletion_policy}". '
                f'Valid values are "{DISK_DELETION_POLICY_DELETE}","{DISK_DELETION_POLICY_DETACH}".',
            )

        seen_names.add(disk.name_suffix)
        seen_luns.add(disk.lun)

        managed_disk: dict[str, Any] = {"storageAccountType": disk.storage_account_type}
        if disk.disk_encryption_set_id is not None:
            managed_disk["diskEncryptionSet"] = {"id": disk.disk_encryption_set_id}

        data_disks.append(
            {
                "createOption": "Empty",
                "diskSizeGB": disk.disk_size_gb,
                "lun": disk.lun,
                "name": name,
                "caching": disk.caching_type,
                "deleteOption": disk.deletion_policy,
                "managedDisk": managed_disk,
            }
        )

    return data_disks


class VirtualMachineService:
    """Gets, creates and deletes virtual machines in the scope's resource group."""

    def __init__(
        self,
        client: _VirtualMachinesClient,
        scope: ServiceScope,
        nic_getter: Callable[[str], Any] | None = None,
        spot_vm_options: SpotVMOptions | None = None,
    ) -> None:
        self.client = client
        self.scope = scope
        self.nic_getter = nic_getter
        self.spot_vm_options = spot_vm_options

    @staticmethod
    def _check(spec: object, message: str) -> VMSpec:
        if not isinstance(spec, VMSpec):
            raise TypeError(message)
        return spec

    def get(self, spec: VMSpec) -> Any:
        """Return the virtual machine with its instance view."""
        vm_spec = self._check(spec, "invalid vm specification")
        try:
            return self.client.get(
                self.scope.resource_group, vm_spec.name, expand="instanceView"
            )
        except ResourceNotFoundError as exc:
            _logger.warning("vm %s not found: %s", vm_spec.name, exc)
            raise

    def create_or_update(self, spec: VMSpec) -> None:
        """Start creating the virtual machine without waiting for it to finish."""
        vm_spec = self._check(spec, "invalid vm specification")
        if self.nic_getter is None:
            raise RuntimeError("no network interface lookup configured")

        _logger.debug("getting nic %s", vm_spec.nic_name)
        nic = self.nic_getter(vm_spec.nic_name)
        if not isinstance(nic, Mapping):
            raise TypeError("error getting network security group")
        _logger.debug("got nic %s", vm_spec.nic_name)

        _logger.debug("creating vm %s", vm_spec.name)
        parameters = self.derive_virtual_machine_parameters(vm_spec, nic)
        try:
            poller = self.client.begin_create_or_update(
                self.scope.resource_group, vm_spec.name, parameters
            )
        except Exception as exc:
            raise RuntimeError(f"cannot create vm: {exc}") from exc

        poller.result()
        _logger.debug("successfully created vm %s", vm_spec.name)

    def delete(self, spec: VMSpec) -> None:
        """Start deleting the virtual machine; a missing VM counts as deleted."""
        vm_spec = self._check(spec, "invalid vm Specification")
        group = self.scope.resource_group
        _logger.debug("deleting vm %s", vm_spec.name)
        try:
            poller = self.client.begin_delete(group, vm_spec.name)
        except ResourceNotFoundError:
            return
        except Exception as exc:
            raise RuntimeError(
                f"failed to delete vm {vm_spec.name} in resource group {group}: {exc}"
            ) from exc

        poller.result()
        _logger.debug("successfully deleted vm %s", vm_spec.name)

    def derive_virtual_machine_parameters(
        self, spec: VMSpec, nic: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Build the create-or-update parameters for ``spec`` attached to ``nic``."""
        os_profile = generate_os_profile(spec)

        if spec.image.resource_id:
            image_reference: dict[str, Any] = {
                "id": f"/subscriptions/{self.scope.subscription_id}{spec.image.resource_id}"
            }
        else:
            image_reference = {
                "publisher": spec.image.publisher,
                "offer": spec.image.offer,
                "sku": spec.image.sku,
                "version": spec.image.version,
            }

        disk_encryption_set = None
        if spec.os_disk.disk_encryption_set_id is not None:
            disk_encryption_set = {"id": spec.os_disk.disk_encryption_set_id}

        security_profile = None
        if spec.security_profile is not None:
            security_profile = {"encryptionAtHost": spec.security_profile.encryption_at_host}

        try:
            priority, eviction_policy, billing_profile = get_spot_vm_options(
                self.spot_vm_options
            )
        except ValueError as exc:
            raise ValueError(f"failed to get Spot VM options {exc}") from exc

        try:
            data_disks = generate_data_disks(spec)
        except InvalidMachineConfigurationError as exc:
            raise InvalidMachineConfigurationError(
                f"failed to generate data disk spec: {exc}"
            ) from exc

        os_disk: dict[str, Any] = {
            "name": f"{spec.name}_OSDisk",
            "osType": spec.os_disk.os_type,
            "createOption": "FromImage",
            "diskSizeGB": spec.os_disk.disk_size_gb,
            "managedDisk": {
                "storageAccountType": spec.os_disk.storage_account_type,
                "diskEncryptionSet": disk_encryption_set,
            },
        }
        if spec.os_disk.caching_type:
            os_disk["caching"] = spec.os_disk.caching_type
        if spec.os_disk.ephemeral_storage_location == "Local":
            os_disk["diffDiskSettings"] = {"option": spec.os_disk.ephemeral_storage_location}

        # An explicit capability wins; otherwise Ultra data disks switch it on.
        if spec.ultra_ssd_capability == ULTRA_SSD_CAPABILITY_DISABLED:
            ultra_ssd_enabled: bool | None = False
        elif spec.ultra_ssd_capability == ULTRA_SSD_CAPABILITY_ENABLED:
            ultra_ssd_enabled = True
        elif any(
            d.storage_account_type == STORAGE_ACCOUNT_ULTRA_SSD_LRS for d in spec.data_disks
        ):
            ultra_ssd_enabled = True
        else:
            ultra_ssd_enabled = None

        vm: dict[str, Any] = {
            "location": self.scope.location,
            "tags": spec.tags,
            "plan": generate_image_plan(spec.image),
            "properties": {
                "hardwareProfile": {"vmSize": spec.size},
                "storageProfile": {
                    "imageReference": image_reference,
                    "osDisk": os_disk,
                    "dataDisks": data_disks,
                },
                "securityProfile": security_profile,
                "osProfile": os_profile,
                "networkProfile": {
                    "networkInterfaces": [
                        {"id": nic.get("id"), "properties": {"primary": True}}
                    ]
                },
                "priority": priority,
                "evictionPolicy": eviction_policy,
                "billingProfile": billing_profile,
                "diagnosticsProfile": spec.diagnostics_profile,
                "additionalCapabilities": {"ultraSSDEnabled": ultra_ssd_enabled},
            },
        }

        if spec.managed_identity:
            vm["identity"] = {
                "type": "UserAssigned",
                "userAssignedIdentities": {spec.managed_identity: {}},
            }
        if spec.zone:
            vm["zones"] = [spec.zone]
        if spec.availability_set_name:
            vm["availabilitySet"] = {
                "id": availability_set_id(
                    self.scope.subscription_id,
                    self.scope.resource_group,
                    spec.availability_set_name,
                )
            }
        return vm