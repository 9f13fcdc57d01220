import pytest

from arch_provision.disk import (
    BootMode,
    DiskPlan,
    PartitionRequest,
    PartitionRole,
    PartitionSpec,
    build_plan,
    parse_size,
    partition_device,
    render,
    validate,
)
from arch_provision.utils.exceptions import (
    DuplicateESPError,
    InsufficientSpaceError,
    MissingESPError,
    MissingRootError,
    NotContiguousError,
    OverlapError,
    PlanError,
)

# ======= Execute with: pytest tests/test_disk_plan.py ========

GIB = 1024


def standard_requests(swap="4096MiB"):
    return [
        PartitionRequest(PartitionRole.ESP, "fat32", "512MiB", "/boot"),
        PartitionRequest(PartitionRole.SWAP, "swap", swap),
        PartitionRequest(PartitionRole.ROOT, "ext4", "rest", "/"),
    ]


@pytest.fixture
def uefi_plan():
    return build_plan("/dev/sda", 8 * GIB, BootMode.UEFI, standard_requests())


def spec(role, fs, start, end, mountpoint=None):
    return PartitionSpec(role=role, filesystem=fs, start_mib=start, end_mib=end, mountpoint=mountpoint)


# --- Sizes ---

@pytest.mark.parametrize("text, expected", [
    ("512MiB", 512),
    ("512M", 512),
    ("4GiB", 4096),
    ("4g", 4096),
    ("1.5GiB", 1536),
    ("1TiB", 1024 * 1024),
    ("25%", 2048),
    ("rest", None),
    ("100%", None),
])
def test_parse_size(text, expected):
    assert parse_size(text, 8 * GIB) == expected


@pytest.mark.parametrize("text", ["", "12", "4 bananas", "0MiB", "150%", "-1GiB"])
def test_parse_size_rejects_garbage(text):
    with pytest.raises(PlanError):
        parse_size(text, 8 * GIB)


# --- Building and rendering ---

def test_build_plan_lays_partitions_out_contiguously(uefi_plan):
    assert [(p.start_mib, p.end_mib) for p in uefi_plan.partitions] == [(1, 513), (513, 4609), (4609, None)]
    validate(uefi_plan)


def test_render_eight_gib_example(uefi_plan):
    """ESP 512MiB, Swap 4096MiB, Root rest on 8GiB."""
    commands = render(uefi_plan)
    mkparts = [c.argv for c in commands if "mkpart" in c.args]

    assert [argv[-2:] for argv in mkparts] == [
        ["1MiB", "513MiB"],
        ["513MiB", "4609MiB"],
        ["4609MiB", "100%"],
    ]
    assert [argv[-3] for argv in mkparts] == ["fat32", "linux-swap", "ext4"]


def test_render_order(uefi_plan):
    commands = render(uefi_plan)

    assert commands[0].argv == ["sgdisk", "--zap-all", "/dev/sda"]
    assert commands[1].argv == ["parted", "-s", "/dev/sda", "mklabel", "gpt"]
    assert commands[3].argv == ["parted", "-s", "/dev/sda", "set", "1", "esp", "on"]
    assert commands[-1].argv == ["partprobe", "/dev/sda"]


def test_gpt_partition_names_carry_plan_hash(uefi_plan):
    mkpart = [c for c in render(uefi_plan) if "mkpart" in c.args][0]
    assert mkpart.args[3] == f"ESP-{uefi_plan.content_hash()[:8]}"


def test_bios_plan_uses_msdos_and_boot_flag():
    plan = build_plan("/dev/vda", 8 * GIB, BootMode.BIOS, standard_requests()[1:])
    validate(plan)
    commands = render(plan)

    assert plan.label_type == "msdos"
    assert ["parted", "-s", "/dev/vda", "mklabel", "msdos"] in [c.argv for c in commands]
    assert ["parted", "-s", "/dev/vda", "set", "2", "boot", "on"] in [c.argv for c in commands]
    assert all(c.args[3] == "primary" for c in commands if "mkpart" in c.args)


def test_only_last_partition_may_take_the_rest():
    requests = [
        PartitionRequest(PartitionRole.ESP, "fat32", "512MiB", "/boot"),
        PartitionRequest(PartitionRole.ROOT, "ext4", "rest", "/"),
        PartitionRequest(PartitionRole.SWAP, "swap", "4GiB"),
    ]
    with pytest.raises(PlanError, match="last partition"):
        build_plan("/dev/sda", 8 * GIB, BootMode.UEFI, requests)


@pytest.mark.parametrize("device, number, expected", [
    ("/dev/sda", 1, "/dev/sda1"),
    ("/dev/nvme0n1", 2, "/dev/nvme0n1p2"),
    ("/dev/mmcblk0", 3, "/dev/mmcblk0p3"),
])
def test_partition_device(device, number, expected):
    assert partition_device(device, number) == expected


# --- Hash and derived identifiers ---

def test_content_hash_is_stable_and_content_sensitive(uefi_plan):
    same = build_plan("/dev/sda", 8 * GIB, BootMode.UEFI, standard_requests())
    other = build_plan("/dev/sda", 8 * GIB, BootMode.UEFI, standard_requests(swap="2GiB"))

    assert uefi_plan.content_hash() == same.content_hash()
    assert uefi_plan.content_hash() != other.content_hash()
    assert uefi_plan.filesystem_uuid(3) == same.filesystem_uuid(3)
    assert uefi_plan.filesystem_uuid(3) != other.filesystem_uuid(3)


def test_fat_volume_id_is_eight_hex_digits(uefi_plan):
    volume_id = uefi_plan.fat_volume_id(1)
    assert len(volume_id) == 8
    int(volume_id, 16)


def test_plan_is_immutable(uefi_plan):
    with pytest.raises(Exception):
        uefi_plan.device = "/dev/sdb"


# --- Validation ---

def test_validate_accepts_uefi_plan_with_data_partition():
    plan = DiskPlan(device="/dev/sda", disk_size_mib=8 * GIB, mode=BootMode.UEFI, partitions=(
        spec(PartitionRole.ESP, "fat32", 1, 513, "/boot"),
        spec(PartitionRole.DATA, "xfs", 513, 2561, "/data"),
        spec(PartitionRole.ROOT, "btrfs", 2561, None, "/"),
    ))
    validate(plan)


def test_validate_rejects_overlap():
    plan = DiskPlan(device="/dev/sda", disk_size_mib=8 * GIB, partitions=(
        spec(PartitionRole.ESP, "fat32", 1, 513),
        spec(PartitionRole.ROOT, "ext4", 500, None),
    ))
    with pytest.raises(OverlapError):
        validate(plan)


def test_validate_rejects_gap():
    plan = DiskPlan(device="/dev/sda", disk_size_mib=8 * GIB, partitions=(
        spec(PartitionRole.ESP, "fat32", 1, 513),
        spec(PartitionRole.ROOT, "ext4", 600, None),
    ))
    with pytest.raises(NotContiguousError):
        validate(plan)


def test_validate_rejects_start_inside_partition_table():
    plan = DiskPlan(device="/dev/sda", disk_size_mib=8 * GIB, partitions=(
        spec(PartitionRole.ESP, "fat32", 0, 512),
        spec(PartitionRole.ROOT, "ext4", 512, None),
    ))
    with pytest.raises(NotContiguousError):
        validate(plan)


def test_validate_requires_esp_for_uefi():
    plan = build_plan("/dev/sda", 8 * GIB, BootMode.UEFI, standard_requests()[1:])
    with pytest.raises(MissingESPError):
        validate(plan)


def test_validate_rejects_two_esps():
    plan = DiskPlan(device="/dev/sda", disk_size_mib=8 * GIB, partitions=(
        spec(PartitionRole.ESP, "fat32", 1, 513),
        spec(PartitionRole.ESP, "fat32", 513, 1025),
        spec(PartitionRole.ROOT, "ext4", 1025, None),
    ))
    with pytest.raises(DuplicateESPError):
        validate(plan)


def test_validate_requires_root():
    plan = DiskPlan(device="/dev/sda", disk_size_mib=8 * GIB, partitions=(
        spec(PartitionRole.ESP, "fat32", 1, 513),
        spec(PartitionRole.SWAP, "swap", 513, None),
    ))
    with pytest.raises(MissingRootError):
        validate(plan)


def test_validate_rejects_plan_larger_than_disk():
    plan = build_plan("/dev/sda", 4 * GIB, BootMode.UEFI, standard_requests(swap="8GiB"))
    with pytest.raises(InsufficientSpaceError):
        validate(plan)


def test_validate_enforces_minimum_root_size():
    plan = build_plan("/dev/sda", 8 * GIB, BootMode.UEFI, standard_requests(), min_root_mib=6 * GIB)
    with pytest.raises(InsufficientSpaceError, match="Root partition"):
        validate(plan)


def test_validate_rejects_wrong_filesystem_for_role():
    plan = DiskPlan(device="/dev/sda", disk_size_mib=8 * GIB, partitions=(
        spec(PartitionRole.ESP, "ext4", 1, 513),
        spec(PartitionRole.ROOT, "ext4", 513, None),
    ))
    with pytest.raises(PlanError, match="cannot use filesystem"):
        validate(plan)


def test_validate_rejects_too_many_msdos_partitions():
    plan = DiskPlan(device="/dev/sda", disk_size_mib=16 * GIB, mode=BootMode.BIOS, partitions=(
        spec(PartitionRole.SWAP, "swap", 1, 1025),
        spec(PartitionRole.DATA, "ext4", 1025, 2049),
        spec(PartitionRole.DATA, "ext4", 2049, 3073),
        spec(PartitionRole.DATA, "ext4", 3073, 4097),
        spec(PartitionRole.ROOT, "ext4", 4097, None),
    ))
    with pytest.raises(PlanError, match="msdos"):
        validate(plan)
