# arch_provision/disk.py

"""
Disk layout planning.

A DiskPlan is pure data: the target device, the boot mode and an ordered,
contiguous sequence of partitions expressed as MiB offsets. Nothing in this
module touches a device. validate() rejects impossible layouts before any
command runs and render() translates a plan into the partitioning commands
that would create it.
"""

import hashlib
import re
import uuid
from enum import Enum
from typing import List, Literal, NamedTuple, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from arch_provision.models import CommandSpec
from arch_provision.utils.exceptions import (
    DuplicateESPError,
    InsufficientSpaceError,
    MissingESPError,
    MissingRootError,
    NotContiguousError,
    OverlapError,
    PlanError,
)

# First usable MiB; everything before it holds the partition table
ALIGNMENT_MIB = 1
DEFAULT_MIN_ROOT_MIB = 2048
# msdos labels only hold four primary partitions
MSDOS_MAX_PARTITIONS = 4

# Namespace for the filesystem UUIDs derived from a plan's content hash
PLAN_UUID_NAMESPACE = uuid.UUID("6f1d3c3e-8a4b-4f0e-9d2a-5b7c1e9a0f42")

Filesystem = Literal["fat32", "swap", "ext4", "btrfs", "xfs", "f2fs"]

# parted's names for the filesystem types
PARTED_FS_TYPES = {
    "fat32": "fat32",
    "swap": "linux-swap",
    "ext4": "ext4",
    "btrfs": "btrfs",
    "xfs": "xfs",
    "f2fs": "f2fs",
}


class BootMode(str, Enum):
    UEFI = "uefi"
    BIOS = "bios"


class PartitionRole(str, Enum):
    ESP = "esp"
    SWAP = "swap"
    ROOT = "root"
    DATA = "data"


# --- 1. Plan Models ---

class PartitionSpec(BaseModel):
    """One partition of the plan. end_mib=None extends it to the end of the disk."""
    model_config = ConfigDict(frozen=True)

    role: PartitionRole
    filesystem: Filesystem
    start_mib: int = Field(ge=0)
    end_mib: Optional[int] = Field(None, gt=0)
    mountpoint: Optional[str] = None

    def resolved_end(self, disk_size_mib: int) -> int:
        return self.end_mib if self.end_mib is not None else disk_size_mib

    def size_mib(self, disk_size_mib: int) -> int:
        return self.resolved_end(disk_size_mib) - self.start_mib


class DiskPlan(BaseModel):
    """The complete, immutable layout of the target disk."""
    model_config = ConfigDict(frozen=True)

    device: str = Field(min_length=1)
    disk_size_mib: int = Field(gt=0)
    mode: BootMode = BootMode.UEFI
    partitions: Tuple[PartitionSpec, ...]
    min_root_mib: int = Field(DEFAULT_MIN_ROOT_MIB, ge=0)

    def content_hash(self) -> str:
        """SHA-256 over the canonical JSON form; scopes confirmation tokens and progress."""
        return hashlib.sha256(self.model_dump_json().encode("utf-8")).hexdigest()

    @property
    def label_type(self) -> str:
        return "gpt" if self.mode == BootMode.UEFI else "msdos"

    def numbered(self) -> List[Tuple[int, PartitionSpec]]:
        """Partitions with their 1-based partition numbers."""
        return list(enumerate(self.partitions, start=1))

    def find(self, role: PartitionRole) -> Optional[Tuple[int, PartitionSpec]]:
        """First partition with the given role, or None."""
        for number, spec in self.numbered():
            if spec.role == role:
                return number, spec
        return None

    def partition_path(self, number: int) -> str:
        return partition_device(self.device, number)

    def partition_name(self, number: int) -> str:
        """GPT partition name, tagged with the plan hash so a matching layout is recognisable."""
        role = self.partitions[number - 1].role.value.upper()
        return f"{role}-{self.content_hash()[:8]}"

    def filesystem_uuid(self, number: int) -> str:
        """Deterministic filesystem UUID for partition `number` of this plan."""
        return str(uuid.uuid5(PLAN_UUID_NAMESPACE, f"{self.content_hash()}:{number}"))

    def fat_volume_id(self, number: int) -> str:
        """32-bit FAT volume id (8 hex digits) derived from the filesystem UUID."""
        return self.filesystem_uuid(number).replace("-", "")[:8].upper()


# --- 2. Building a plan from size requests ---

class PartitionRequest(NamedTuple):
    role: PartitionRole
    filesystem: str
    size: str
    mountpoint: Optional[str] = None


_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(MiB|M|GiB|G|TiB|T|%)\s*$", re.IGNORECASE)
_UNIT_MIB = {"m": 1, "mib": 1, "g": 1024, "gib": 1024, "t": 1024 * 1024, "tib": 1024 * 1024}
REST_SIZES = {"rest", "remainder", "100%"}


def parse_size(size: str, disk_size_mib: int) -> Optional[int]:
    """
    Converts a size request into MiB.

    Accepts binary sizes ("512MiB", "4G", "1TiB"), percentages of the whole
    disk ("25%"), and "rest"/"remainder"/"100%" which return None, meaning
    "up to the end of the disk".
    """
    text = size.strip()
    if text.lower() in REST_SIZES:
        return None
    match = _SIZE_PATTERN.match(text)
    if not match:
        raise PlanError(f"Unrecognised partition size '{size}'")
    value, unit = float(match.group(1)), match.group(2).lower()
    if unit == "%":
        if not 0 < value <= 100:
            raise PlanError(f"Percentage out of range in '{size}'")
        return int(disk_size_mib * value // 100)
    mib = int(value * _UNIT_MIB[unit])
    if mib <= 0:
        raise PlanError(f"Partition size must be positive: '{size}'")
    return mib


def build_plan(device: str, disk_size_mib: int, mode: BootMode,
               requests: Sequence[PartitionRequest],
               min_root_mib: int = DEFAULT_MIN_ROOT_MIB) -> DiskPlan:
    """
    Lays requests out back to back from the 1 MiB boundary. Only the last
    request may take the rest of the disk. The result is not validated.
    """
    partitions: List[PartitionSpec] = []
    start = ALIGNMENT_MIB
    for index, request in enumerate(requests):
        size = parse_size(request.size, disk_size_mib)
        if size is None and index != len(requests) - 1:
            raise PlanError(f"Only the last partition may use the rest of the disk ({request.role.value} does)")
        end = None if size is None else start + size
        partitions.append(PartitionSpec(
            role=request.role,
            filesystem=request.filesystem,
            start_mib=start,
            end_mib=end,
            mountpoint=request.mountpoint,
        ))
        if end is not None:
            start = end
    return DiskPlan(device=device, disk_size_mib=disk_size_mib, mode=mode,
                    partitions=tuple(partitions), min_root_mib=min_root_mib)


# --- 3. Validation ---

_ROLE_FILESYSTEMS = {
    PartitionRole.ESP: {"fat32"},
    PartitionRole.SWAP: {"swap"},
    PartitionRole.ROOT: {"ext4", "btrfs", "xfs", "f2fs"},
    PartitionRole.DATA: {"ext4", "btrfs", "xfs", "f2fs", "fat32"},
}


def validate(plan: DiskPlan) -> None:
    """
    Raises a PlanError subclass unless the plan is contiguous, non-overlapping,
    fits on the disk, has exactly one root of at least min_root_mib, and has
    exactly one ESP when booting with UEFI.
    """
    if not plan.partitions:
        raise MissingRootError(f"Plan for {plan.device} has no partitions")

    for number, spec in plan.numbered():
        if spec.filesystem not in _ROLE_FILESYSTEMS[spec.role]:
            raise PlanError(f"Partition {number} ({spec.role.value}) cannot use filesystem {spec.filesystem}")

    esp_count = sum(1 for p in plan.partitions if p.role == PartitionRole.ESP)
    if esp_count > 1:
        raise DuplicateESPError(f"Plan has {esp_count} EFI System Partitions, expected one")
    if plan.mode == BootMode.UEFI and esp_count == 0:
        raise MissingESPError("UEFI mode requires an EFI System Partition")

    root_count = sum(1 for p in plan.partitions if p.role == PartitionRole.ROOT)
    if root_count != 1:
        raise MissingRootError(f"Plan must have exactly one root partition, found {root_count}")

    if plan.mode == BootMode.BIOS and len(plan.partitions) > MSDOS_MAX_PARTITIONS:
        raise PlanError(f"BIOS mode uses an msdos label with at most {MSDOS_MAX_PARTITIONS} partitions")

    previous_end: Optional[int] = None
    last = len(plan.partitions)
    for number, spec in plan.numbered():
        if spec.end_mib is None and number != last:
            raise OverlapError(f"Partition {number} extends to the end of the disk but partition {number + 1} follows it")
        if spec.end_mib is not None and spec.end_mib <= spec.start_mib:
            raise OverlapError(f"Partition {number} ends at {spec.end_mib}MiB before it starts at {spec.start_mib}MiB")

        if previous_end is None:
            if spec.start_mib < ALIGNMENT_MIB:
                raise NotContiguousError(f"Partition {number} starts at {spec.start_mib}MiB, inside the partition table area")
        elif spec.start_mib < previous_end:
            raise OverlapError(f"Partition {number} starts at {spec.start_mib}MiB, inside partition {number - 1} (ends {previous_end}MiB)")
        elif spec.start_mib > previous_end:
            raise NotContiguousError(f"Gap of {spec.start_mib - previous_end}MiB before partition {number}")

        if spec.resolved_end(plan.disk_size_mib) > plan.disk_size_mib or spec.start_mib >= plan.disk_size_mib:
            raise InsufficientSpaceError(
                f"Partition {number} ends at {spec.resolved_end(plan.disk_size_mib)}MiB but {plan.device} has {plan.disk_size_mib}MiB"
            )
        previous_end = spec.resolved_end(plan.disk_size_mib)

    _, root = plan.find(PartitionRole.ROOT)
    root_size = root.size_mib(plan.disk_size_mib)
    if root_size < plan.min_root_mib:
        raise InsufficientSpaceError(f"Root partition is {root_size}MiB, at least {plan.min_root_mib}MiB is required")


# --- 4. Rendering ---

def partition_device(device: str, number: int) -> str:
    """/dev/sda + 1 -> /dev/sda1; /dev/nvme0n1 + 1 -> /dev/nvme0n1p1."""
    return f"{device}p{number}" if device[-1:].isdigit() else f"{device}{number}"


def format_offset(mib: Optional[int]) -> str:
    return "100%" if mib is None else f"{mib}MiB"


def zap_command(plan: DiskPlan) -> CommandSpec:
    return CommandSpec.of("sgdisk", "--zap-all", plan.device)


def label_command(plan: DiskPlan) -> CommandSpec:
    return CommandSpec.of("parted", "-s", plan.device, "mklabel", plan.label_type)


def mkpart_command(plan: DiskPlan, number: int) -> CommandSpec:
    spec = plan.partitions[number - 1]
    # GPT takes a partition name here, msdos a partition type
    name = plan.partition_name(number) if plan.label_type == "gpt" else "primary"
    return CommandSpec.of(
        "parted", "-s", plan.device, "mkpart", name, PARTED_FS_TYPES[spec.filesystem],
        format_offset(spec.start_mib), format_offset(spec.end_mib),
    )


def flag_command(plan: DiskPlan, number: int, flag: str) -> CommandSpec:
    return CommandSpec.of("parted", "-s", plan.device, "set", str(number), flag, "on")


def partition_flag(plan: DiskPlan, number: int) -> Optional[str]:
    """The parted flag a partition needs: esp for the ESP, boot for a BIOS root."""
    spec = plan.partitions[number - 1]
    if spec.role == PartitionRole.ESP:
        return "esp"
    if spec.role == PartitionRole.ROOT and plan.mode == BootMode.BIOS:
        return "boot"
    return None


def partprobe_command(plan: DiskPlan) -> CommandSpec:
    return CommandSpec.of("partprobe", plan.device)


def render(plan: DiskPlan) -> List[CommandSpec]:
    """
    Translates a plan into the ordered partitioning commands: wipe, label,
    one mkpart per partition (each followed by its flag, if any), partprobe.
    """
    commands = [zap_command(plan), label_command(plan)]
    for number, _ in plan.numbered():
        commands.append(mkpart_command(plan, number))
        flag = partition_flag(plan, number)
        if flag:
            commands.append(flag_command(plan, number, flag))
    commands.append(partprobe_command(plan))
    return commands
