# arch_provision/executors/disk.py
import os
from typing import Dict, List, NamedTuple, Optional

from arch_provision.disk import (
    DiskPlan,
    PartitionRole,
    PartitionSpec,
    flag_command,
    label_command,
    mkpart_command,
    partition_flag,
    partprobe_command,
    zap_command,
)
from arch_provision.models import CommandResult, CommandRunner, CommandSpec, PostCondition, Step

# Global constants for mount paths
MOUNT_ROOT = "/mnt"
DEFAULT_FORMAT_TIMEOUT = 300.0
# parted rounds offsets when printing in MiB; GPT keeps a backup table at the end
OFFSET_TOLERANCE_MIB = 1
END_OF_DISK_SLACK_MIB = 2

# blkid's TYPE for each planned filesystem
BLKID_TYPES = {"fat32": "vfat", "swap": "swap", "ext4": "ext4", "btrfs": "btrfs", "xfs": "xfs", "f2fs": "f2fs"}


# --- 1. Reading the current state of the disk ---

class ExistingPartition(NamedTuple):
    number: int
    start_mib: int
    end_mib: int
    filesystem: str
    name: str
    flags: List[str]


class ExistingLayout(NamedTuple):
    label: Optional[str]
    size_mib: int
    partitions: List[ExistingPartition]

    @property
    def blank(self) -> bool:
        return self.label in (None, "", "unknown") and not self.partitions


def _mib(value: str) -> int:
    return round(float(value.strip().lower().replace("mib", "")))


def parse_parted_layout(output: str) -> ExistingLayout:
    """
    Parses `parted -m -s DEV unit MiB print`:

        BYT;
        /dev/sda:8192MiB:scsi:512:512:gpt:ATA DISK:;
        1:1.00MiB:513MiB:512MiB:fat32:ESP-1a2b3c4d:boot, esp;
    """
    label: Optional[str] = None
    size = 0
    partitions: List[ExistingPartition] = []
    for raw in output.splitlines():
        line = raw.strip().rstrip(";")
        if not line or line == "BYT":
            continue
        fields = line.split(":")
        if fields[0].startswith("/"):
            size = _mib(fields[1]) if len(fields) > 1 else 0
            label = fields[5] if len(fields) > 5 else None
        elif fields[0].isdigit() and len(fields) >= 5:
            flags = fields[6].split(",") if len(fields) > 6 else []
            partitions.append(ExistingPartition(
                number=int(fields[0]),
                start_mib=_mib(fields[1]),
                end_mib=_mib(fields[2]),
                filesystem=fields[4],
                name=fields[5] if len(fields) > 5 else "",
                flags=[flag.strip() for flag in flags if flag.strip()],
            ))
    return ExistingLayout(label=label, size_mib=size, partitions=partitions)


def _matches(plan: DiskPlan, number: int, existing: ExistingPartition) -> bool:
    spec = plan.partitions[number - 1]
    if existing.number != number or abs(existing.start_mib - spec.start_mib) > OFFSET_TOLERANCE_MIB:
        return False
    if spec.end_mib is None:
        if existing.end_mib < plan.disk_size_mib - END_OF_DISK_SLACK_MIB:
            return False
    elif abs(existing.end_mib - spec.end_mib) > OFFSET_TOLERANCE_MIB:
        return False
    if plan.label_type == "gpt" and existing.name != plan.partition_name(number):
        return False
    return True


def is_plan_prefix(plan: DiskPlan, layout: ExistingLayout) -> bool:
    """True if the disk carries the plan's label and its partitions are the plan's first N partitions."""
    if layout.label != plan.label_type or len(layout.partitions) > len(plan.partitions):
        return False
    return all(_matches(plan, index, existing) for index, existing in enumerate(layout.partitions, start=1))


def parse_blkid_export(output: str) -> Dict[str, str]:
    values = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values


def disk_size_mib(runner: CommandRunner, device: str) -> int:
    """Size of a whole disk in MiB, as reported by lsblk."""
    result = runner.probe(CommandSpec.of("lsblk", "-b", "-d", "-n", "-o", "SIZE", device))
    if not result.ok or not result.stdout.strip().isdigit():
        raise ValueError(f"Cannot determine the size of {device}: {result.tail() or 'no output'}")
    return int(result.stdout.strip()) // (1024 * 1024)


def is_whole_disk(runner: CommandRunner, device: str) -> bool:
    result = runner.probe(CommandSpec.of("lsblk", "-d", "-n", "-o", "TYPE", device))
    return result.ok and result.stdout.strip() == "disk"


def list_disks(runner: CommandRunner) -> List[List[str]]:
    """[name, size, model] for every disk lsblk reports (loop devices excluded)."""
    result = runner.probe(CommandSpec.of("lsblk", "-d", "-n", "-P", "-o", "NAME,SIZE,TYPE,MODEL"))
    disks = []
    for line in result.stdout.splitlines():
        fields = dict(part.split("=", 1) for part in line.split('" ') if "=" in part)
        fields = {key: value.strip('"') for key, value in fields.items()}
        if fields.get("TYPE") == "disk":
            disks.append([f"/dev/{fields.get('NAME', '')}", fields.get("SIZE", ""), fields.get("MODEL", "")])
    return disks


# --- 2. Building steps for the disk stages ---

class DiskManager:
    """
    Turns a DiskPlan into the steps of the partition, format and mount
    stages, each paired with a read-only post-condition.

    Filesystems are created with UUIDs derived from the plan, so "already
    formatted" means "formatted by this plan", never "some filesystem from
    a previous install".
    """

    def __init__(self, plan: DiskPlan, mount_root: str = MOUNT_ROOT,
                 format_timeout: float = DEFAULT_FORMAT_TIMEOUT):
        self.plan = plan
        self.mount_root = mount_root
        self.format_timeout = format_timeout

    # --- Probes ---

    def _layout_probe(self) -> CommandSpec:
        return CommandSpec.of("parted", "-m", "-s", self.plan.device, "unit", "MiB", "print",
                              allowed_exit_codes=(0, 1))

    def _layout_check(self, description: str, predicate) -> PostCondition:
        return PostCondition(
            description=description,
            probe=self._layout_probe(),
            predicate=lambda result: predicate(parse_parted_layout(result.stdout)),
        )

    def target_path(self, mountpoint: str) -> str:
        return os.path.normpath(self.mount_root + "/" + mountpoint.lstrip("/"))

    # --- PARTITIONING ---

    def partition_steps(self) -> List[Step]:
        """Wipe, label, one mkpart (and flag) per partition, partprobe; all irreversible."""
        plan = self.plan
        steps = [
            Step(
                name=f"Wiping partition table signatures on {plan.device}",
                command=zap_command(plan),
                check=self._layout_check(
                    "disk is blank or already carries this plan",
                    lambda layout: layout.blank or is_plan_prefix(plan, layout),
                ),
                irreversible=True,
            ),
            Step(
                name=f"Creating {plan.label_type} partition table on {plan.device}",
                command=label_command(plan),
                check=self._layout_check(
                    f"{plan.label_type} label present",
                    lambda layout: is_plan_prefix(plan, layout),
                ),
                irreversible=True,
            ),
        ]

        for number, spec in plan.numbered():
            steps.append(Step(
                name=f"Creating {spec.role.value.upper()} partition {number} ({spec.filesystem})",
                command=mkpart_command(plan, number),
                check=self._layout_check(
                    f"partition {number} matches the plan",
                    lambda layout, n=number: is_plan_prefix(plan, layout) and len(layout.partitions) >= n,
                ),
                irreversible=True,
            ))
            flag = partition_flag(plan, number)
            if flag:
                steps.append(Step(
                    name=f"Setting {flag} flag on partition {number}",
                    command=flag_command(plan, number, flag),
                    check=self._layout_check(
                        f"partition {number} has the {flag} flag",
                        lambda layout, n=number, f=flag: any(
                            p.number == n and f in p.flags for p in layout.partitions
                        ),
                    ),
                    irreversible=True,
                ))

        last = len(plan.partitions)
        steps.append(Step(
            name=f"Updating kernel partition table for {plan.device}",
            command=partprobe_command(plan),
            check=PostCondition(
                description=f"{plan.partition_path(last)} is a block device",
                probe=CommandSpec.of("test", "-b", plan.partition_path(last)),
                predicate=lambda result: result.ok,
            ),
        ))
        return steps

    # --- FORMATTING ---

    def format_command(self, number: int, spec: PartitionSpec) -> CommandSpec:
        path = self.plan.partition_path(number)
        fs_uuid = self.plan.filesystem_uuid(number)
        label = spec.role.value.upper()

        if spec.filesystem == "fat32":
            argv = ["mkfs.fat", "-F32", "-i", self.plan.fat_volume_id(number), "-n", label]
        elif spec.filesystem == "swap":
            argv = ["mkswap", "-U", fs_uuid, "-L", label]
        elif spec.filesystem == "ext4":
            argv = ["mkfs.ext4", "-F", "-U", fs_uuid, "-L", label]
        elif spec.filesystem == "btrfs":
            argv = ["mkfs.btrfs", "-f", "-U", fs_uuid, "-L", label]
        elif spec.filesystem == "xfs":
            argv = ["mkfs.xfs", "-f", "-m", f"uuid={fs_uuid}", "-L", label]
        elif spec.filesystem == "f2fs":
            argv = ["mkfs.f2fs", "-f", "-U", fs_uuid, "-l", label]
        else:
            raise ValueError(f"Unsupported filesystem: {spec.filesystem}")

        argv.append(path)
        return CommandSpec.of(*argv, timeout=self.format_timeout)

    def expected_uuid(self, number: int) -> str:
        """The UUID blkid should report once partition `number` is formatted."""
        if self.plan.partitions[number - 1].filesystem == "fat32":
            volume_id = self.plan.fat_volume_id(number)
            return f"{volume_id[:4]}-{volume_id[4:]}"
        return self.plan.filesystem_uuid(number)

    def filesystem_check(self, number: int) -> PostCondition:
        spec = self.plan.partitions[number - 1]
        path = self.plan.partition_path(number)
        expected_type = BLKID_TYPES[spec.filesystem]
        expected_uuid = self.expected_uuid(number)

        def predicate(result: CommandResult) -> bool:
            values = parse_blkid_export(result.stdout)
            return values.get("TYPE") == expected_type and values.get("UUID", "").lower() == expected_uuid.lower()

        return PostCondition(
            description=f"{path} carries {expected_type} signature {expected_uuid}",
            probe=CommandSpec.of("blkid", "-p", "-o", "export", path, allowed_exit_codes=(0, 2)),
            predicate=predicate,
        )

    def format_steps(self) -> List[Step]:
        return [
            Step(
                name=f"Formatting {self.plan.partition_path(number)} as {spec.filesystem}",
                command=self.format_command(number, spec),
                check=self.filesystem_check(number),
                irreversible=True,
            )
            for number, spec in self.plan.numbered()
        ]

    # --- MOUNT/UNMOUNT OPERATIONS ---

    def _mkdir_step(self, target: str) -> Step:
        return Step(
            name=f"Ensuring mount target directory {target} exists",
            command=CommandSpec.of("mkdir", "-p", target),
            check=PostCondition(
                description=f"{target} is a directory",
                probe=CommandSpec.of("test", "-d", target),
                predicate=lambda result: result.ok,
            ),
        )

    def _mount_step(self, source: str, target: str) -> Step:
        return Step(
            name=f"Mounting {source} to {target}",
            command=CommandSpec.of("mount", source, target),
            check=PostCondition(
                description=f"{source} is mounted on {target}",
                probe=CommandSpec.of("findmnt", "-n", "-o", "SOURCE", "--mountpoint", target,
                                     allowed_exit_codes=(0, 1)),
                # btrfs sources read /dev/sda3[/subvol]
                predicate=lambda result: source in {line.split("[")[0].strip() for line in result.stdout.splitlines()},
            ),
        )

    def swap_active_check(self, path: str) -> PostCondition:
        return PostCondition(
            description=f"{path} is an active swap area",
            probe=CommandSpec.of("swapon", "--show=NAME", "--noheadings", "--raw"),
            predicate=lambda result: path in result.stdout.split(),
        )

    def mount_steps(self) -> List[Step]:
        """Root first, then every other mountpoint shortest path first, then swap."""
        root_number, _ = self.plan.find(PartitionRole.ROOT)
        root_path = self.plan.partition_path(root_number)
        steps = [self._mkdir_step(self.mount_root), self._mount_step(root_path, self.mount_root)]

        others = sorted(
            ((number, spec) for number, spec in self.plan.numbered()
             if spec.mountpoint and spec.role not in (PartitionRole.ROOT, PartitionRole.SWAP)),
            key=lambda item: item[1].mountpoint.count("/"),
        )
        for number, spec in others:
            target = self.target_path(spec.mountpoint)
            steps.append(self._mkdir_step(target))
            steps.append(self._mount_step(self.plan.partition_path(number), target))

        swap = self.plan.find(PartitionRole.SWAP)
        if swap:
            path = self.plan.partition_path(swap[0])
            steps.append(Step(
                name=f"Enabling swap on {path}",
                command=CommandSpec.of("swapon", path),
                check=self.swap_active_check(path),
            ))
        return steps

    # --- FSTAB GENERATION ---

    def fstab_step(self) -> Step:
        """genfstab -U over the mounted target; the root UUID proves it ran against this plan."""
        root_number, _ = self.plan.find(PartitionRole.ROOT)
        fstab = self.target_path("/etc/fstab")
        root_uuid = self.expected_uuid(root_number)
        return Step(
            name=f"Generating {fstab}",
            command=CommandSpec.of("sh", "-c", f"genfstab -U {self.mount_root} > {fstab}"),
            check=PostCondition(
                description=f"{fstab} mounts UUID={root_uuid}",
                probe=CommandSpec.of("grep", "-q", f"UUID={root_uuid}", fstab, allowed_exit_codes=(0, 1, 2)),
                predicate=lambda result: result.ok,
            ),
        )

    # --- TEARDOWN ---

    def teardown_steps(self) -> List[Step]:
        steps = [
            Step(name="Flushing filesystem buffers", command=CommandSpec.of("sync")),
            Step(
                name=f"Unmounting everything below {self.mount_root}",
                command=CommandSpec.of("umount", "-R", self.mount_root),
                check=PostCondition(
                    description=f"nothing is mounted on {self.mount_root}",
                    probe=CommandSpec.of("findmnt", "--mountpoint", self.mount_root, allowed_exit_codes=(0, 1)),
                    predicate=lambda result: result.exit_code != 0,
                ),
            ),
        ]
        swap = self.plan.find(PartitionRole.SWAP)
        if swap:
            path = self.plan.partition_path(swap[0])
            steps.append(Step(
                name=f"Disabling swap on {path}",
                command=CommandSpec.of("swapoff", path),
                check=PostCondition(
                    description=f"{path} is not an active swap area",
                    probe=CommandSpec.of("swapon", "--show=NAME", "--noheadings", "--raw"),
                    predicate=lambda result: path not in result.stdout.split(),
                ),
            ))
        return steps
