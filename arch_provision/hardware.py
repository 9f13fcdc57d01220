# arch_provision/hardware.py

import os
from enum import Enum
from typing import List

from arch_provision.models import CommandRunner, CommandSpec
from arch_provision.utils.exceptions import ShellCommandError

EFI_FIRMWARE_DIR = "/sys/firmware/efi"


class CpuVendor(str, Enum):
    INTEL = "intel"
    AMD = "amd"
    UNKNOWN = "unknown"


class GpuVendor(str, Enum):
    INTEL = "intel"
    AMD = "amd"
    NVIDIA = "nvidia"
    UNKNOWN = "unknown"


# --- 1. Detection ---

def detect_cpu_vendor(runner: CommandRunner) -> CpuVendor:
    """Reads the vendor id from lscpu; anything unrecognised is UNKNOWN."""
    try:
        result = runner.probe(CommandSpec.of("lscpu"))
    except ShellCommandError:
        return CpuVendor.UNKNOWN
    if "GenuineIntel" in result.stdout:
        return CpuVendor.INTEL
    if "AuthenticAMD" in result.stdout:
        return CpuVendor.AMD
    return CpuVendor.UNKNOWN


def detect_gpu_vendor(runner: CommandRunner) -> GpuVendor:
    """
    Looks at the display controllers lspci reports. NVIDIA wins over the
    others so hybrid laptops get the proprietary driver offered.
    """
    try:
        result = runner.probe(CommandSpec.of("lspci"))
    except ShellCommandError:
        return GpuVendor.UNKNOWN

    controllers = [
        line.lower() for line in result.stdout.splitlines()
        if "vga compatible controller" in line.lower() or "3d controller" in line.lower()
        or "display controller" in line.lower()
    ]
    text = "\n".join(controllers)
    if "nvidia" in text:
        return GpuVendor.NVIDIA
    if "advanced micro devices" in text or "amd/ati" in text or "radeon" in text:
        return GpuVendor.AMD
    if "intel" in text:
        return GpuVendor.INTEL
    return GpuVendor.UNKNOWN


def is_uefi(firmware_dir: str = EFI_FIRMWARE_DIR) -> bool:
    return os.path.isdir(firmware_dir)


# --- 2. Package selection ---

def microcode_packages(cpu: CpuVendor) -> List[str]:
    if cpu == CpuVendor.INTEL:
        return ["intel-ucode"]
    if cpu == CpuVendor.AMD:
        return ["amd-ucode"]
    return []


def gpu_driver_packages(gpu: GpuVendor, kernel: str = "linux") -> List[str]:
    """mesa for Intel/AMD/unknown, nvidia (nvidia-lts on the LTS kernel) for NVIDIA."""
    if gpu == GpuVendor.NVIDIA:
        return ["nvidia-lts" if kernel == "linux-lts" else "nvidia"]
    return ["mesa"]


# --- 3. Resolving the configured choice ---

def resolve_cpu(choice: str, runner: CommandRunner) -> CpuVendor:
    """auto detects; none installs no microcode."""
    if choice == "auto":
        return detect_cpu_vendor(runner)
    if choice == "none":
        return CpuVendor.UNKNOWN
    return CpuVendor(choice)


def resolve_gpu(choice: str, runner: CommandRunner) -> GpuVendor:
    if choice == "auto":
        return detect_gpu_vendor(runner)
    if choice == "nvidia":
        return GpuVendor.NVIDIA
    # mesa serves Intel, AMD and anything unrecognised alike
    return GpuVendor.UNKNOWN
