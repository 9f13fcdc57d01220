# arch_provision/stages.py

"""
The stage catalogue of an Arch Linux + Enlightenment install.

build_stages() expands an InstallerConfig and a validated DiskPlan into
concrete stages. Nothing here runs a command: every step is a CommandSpec
plus the read-only PostCondition that proves its effect, and chroot steps
are marked so the runner prefixes them with arch-chroot.
"""

import os
from typing import List, Sequence

from pydantic import SecretStr

from arch_provision.config.models import InstallerConfig
from arch_provision.disk import BootMode, DiskPlan, PartitionRole
from arch_provision.executors.disk import DiskManager
from arch_provision.hardware import CpuVendor, GpuVendor, gpu_driver_packages, microcode_packages
from arch_provision.models import CommandResult, CommandSpec, PostCondition, Stage, Step

SUDOERS_DROPIN = "/etc/sudoers.d/10-wheel"
SUDOERS_RULES = "%wheel ALL=(ALL:ALL) ALL\nDefaults !tty_tickets\n"
GRUB_CONFIG = "/boot/grub/grub.cfg"
GRUB_BOOTLOADER_ID = "GRUB"

# Stage names in execution order
STAGE_NAMES = (
    "partition", "format", "mount", "bootstrap", "configure",
    "users", "bootloader", "packages", "finalize",
)


class StageBuilder:
    """Builds the steps of each stage for one config, plan and hardware."""

    def __init__(self, config: InstallerConfig, plan: DiskPlan,
                 cpu: CpuVendor = CpuVendor.UNKNOWN, gpu: GpuVendor = GpuVendor.UNKNOWN):
        self.config = config
        self.plan = plan
        self.cpu = cpu
        self.gpu = gpu
        self.mount_root = config.engine.mount_root
        self.disk = DiskManager(plan, mount_root=self.mount_root, format_timeout=config.engine.format_timeout)

    # --- Helpers ---

    def target(self, path: str) -> str:
        """Host path of `path` inside the installed system."""
        return os.path.normpath(self.mount_root + "/" + path.lstrip("/"))

    def packages_installed(self, packages: Sequence[str]) -> PostCondition:
        return PostCondition(
            description=f"{', '.join(packages)} installed in {self.mount_root}",
            probe=CommandSpec.of(
                "pacman", "--root", self.mount_root, "--dbpath", self.target("/var/lib/pacman"),
                "-Q", *packages,
            ),
            predicate=lambda result: result.ok,
        )

    def pacman_step(self, name: str, packages: Sequence[str]) -> Step:
        return Step(
            name=name,
            command=CommandSpec.of("pacman", "-S", "--noconfirm", "--needed", *packages,
                                   chroot=True, long_running=True),
            check=self.packages_installed(packages),
        )

    def file_step(self, path: str, content: str) -> Step:
        """Writes `content` to `path` in the target with tee; done once the file reads back unchanged."""
        return Step(
            name=f"Writing {path}",
            command=CommandSpec.of("tee", path, chroot=True, stdin=SecretStr(content)),
            check=PostCondition(
                description=f"{path} has the expected content",
                probe=CommandSpec.of("cat", self.target(path)),
                predicate=lambda result: result.ok and result.stdout == content,
            ),
        )

    def path_check(self, path: str, test_flag: str = "-f") -> PostCondition:
        return PostCondition(
            description=f"{path} exists in the target",
            probe=CommandSpec.of("test", test_flag, self.target(path)),
            predicate=lambda result: result.ok,
        )

    # --- Stages ---

    def partition(self) -> Stage:
        return Stage("partition", self.disk.partition_steps(),
                     description=f"Partitioning {self.plan.device}")

    def format(self) -> Stage:
        return Stage("format", self.disk.format_steps(), depends_on=("partition",),
                     description="Creating filesystems")

    def mount(self) -> Stage:
        return Stage("mount", self.disk.mount_steps(), depends_on=("format",),
                     description=f"Mounting the target under {self.mount_root}", volatile=True)

    def bootstrap(self) -> Stage:
        packages = list(dict.fromkeys([*self.config.packages.base, self.config.system.kernel]))
        steps = [
            Step(
                name="Installing the base system with pacstrap",
                command=CommandSpec.of("pacstrap", "-K", self.mount_root, *packages, long_running=True),
                check=self.packages_installed(packages),
            ),
            self.disk.fstab_step(),
        ]
        return Stage("bootstrap", steps, depends_on=("mount",), description="Bootstrapping the base system")

    def configure(self) -> Stage:
        system = self.config.system
        zoneinfo = f"/usr/share/zoneinfo/{system.timezone}"
        locale_line = f"{system.locale} {system.locale.split('.')[-1] if '.' in system.locale else 'ISO-8859-1'}"
        generated = system.locale.lower().replace("utf-8", "utf8")

        steps = [
            Step(
                name=f"Setting timezone to {system.timezone}",
                command=CommandSpec.of("ln", "-sf", zoneinfo, "/etc/localtime", chroot=True),
                check=PostCondition(
                    description=f"/etc/localtime points to {zoneinfo}",
                    probe=CommandSpec.of("readlink", self.target("/etc/localtime")),
                    predicate=lambda result: result.stdout.strip() == zoneinfo,
                ),
            ),
            Step(
                name="Setting the hardware clock",
                command=CommandSpec.of("hwclock", "--systohc", chroot=True),
                check=self.path_check("/etc/adjtime"),
            ),
            Step(
                name=f"Enabling {system.locale} in /etc/locale.gen",
                command=CommandSpec.of("sed", "-i", f"s/^#{locale_line}/{locale_line}/", "/etc/locale.gen", chroot=True),
                check=PostCondition(
                    description=f"{locale_line} is enabled",
                    probe=CommandSpec.of("grep", "-q", f"^{locale_line}", self.target("/etc/locale.gen")),
                    predicate=lambda result: result.ok,
                ),
            ),
            Step(
                name="Generating locales",
                command=CommandSpec.of("locale-gen", chroot=True),
                check=PostCondition(
                    description=f"{system.locale} is available",
                    probe=CommandSpec.of("locale", "-a", chroot=True),
                    predicate=lambda result: generated in result.stdout.lower().split(),
                ),
            ),
            self.file_step("/etc/locale.conf", f"LANG={system.locale}\n"),
            self.file_step("/etc/vconsole.conf", f"KEYMAP={system.keymap}\n"),
            self.file_step("/etc/hostname", f"{system.hostname}\n"),
            self.file_step(
                "/etc/hosts",
                "127.0.0.1\tlocalhost\n"
                "::1\tlocalhost\n"
                f"127.0.1.1\t{system.hostname}.localdomain\t{system.hostname}\n",
            ),
        ]
        return Stage("configure", steps, depends_on=("bootstrap",),
                     description="Configuring locale, time and hostname")

    def users(self) -> Stage:
        steps = [self.pacman_step("Installing sudo", ["sudo"]), self.password_step("root", self.config.root_password)]

        for user in self.config.user:
            groups = list(user.groups)
            if user.sudo and "wheel" not in groups:
                groups.append("wheel")
            steps.append(Step(
                name=f"Creating user {user.name}",
                command=CommandSpec.of("useradd", "-m", "-G", ",".join(groups), "-s", "/bin/bash", user.name,
                                       chroot=True),
                check=PostCondition(
                    description=f"{user.name} exists in /etc/passwd",
                    probe=CommandSpec.of("grep", "-q", f"^{user.name}:", self.target("/etc/passwd")),
                    predicate=lambda result: result.ok,
                ),
            ))
            steps.append(self.password_step(user.name, user.password))

        if any(user.sudo for user in self.config.user):
            steps.append(self.file_step(SUDOERS_DROPIN, SUDOERS_RULES))

        return Stage("users", steps, depends_on=("configure",), description="Setting up users")

    def password_step(self, name: str, password: SecretStr) -> Step:
        """chpasswd reads name:password from stdin. It always runs so a changed password is applied."""
        return Step(
            name=f"Setting password for {name}",
            command=CommandSpec.of("chpasswd", chroot=True,
                                   stdin=SecretStr(f"{name}:{password.get_secret_value()}\n")),
        )

    def bootloader(self) -> Stage:
        uefi = self.plan.mode == BootMode.UEFI
        packages = ["grub", "efibootmgr", "os-prober"] if uefi else ["grub", "os-prober"]
        steps = [self.pacman_step("Installing GRUB", packages)]

        if uefi:
            _, esp = self.plan.find(PartitionRole.ESP)
            efi_directory = esp.mountpoint or self.config.disk.esp_mountpoint
            steps.append(Step(
                name="Installing GRUB for UEFI",
                command=CommandSpec.of("grub-install", "--target=x86_64-efi", f"--efi-directory={efi_directory}",
                                       f"--bootloader-id={GRUB_BOOTLOADER_ID}", chroot=True),
                check=self.path_check(f"{efi_directory}/EFI/{GRUB_BOOTLOADER_ID}/grubx64.efi"),
            ))
        else:
            steps.append(Step(
                name=f"Installing GRUB to the MBR of {self.plan.device}",
                command=CommandSpec.of("grub-install", "--target=i386-pc", self.plan.device, chroot=True),
                check=self.path_check("/boot/grub/i386-pc/core.img"),
            ))

        steps.append(Step(
            name="Generating GRUB configuration",
            command=CommandSpec.of("grub-mkconfig", "-o", GRUB_CONFIG, chroot=True),
            check=self.path_check(GRUB_CONFIG, "-s"),
        ))
        return Stage("bootloader", steps, depends_on=("configure",), description="Installing the bootloader")

    def packages(self) -> Stage:
        kernel = self.config.system.kernel
        drivers = microcode_packages(self.cpu) + gpu_driver_packages(self.gpu, kernel)
        desktop = list(dict.fromkeys([f"{kernel}-headers", *self.config.packages.desktop]))

        steps = [
            self.pacman_step("Installing CPU microcode and GPU drivers", drivers),
            self.pacman_step("Installing the Enlightenment desktop and utilities", desktop),
        ]
        for service in self.config.packages.services:
            steps.append(Step(
                name=f"Enabling {service}",
                command=CommandSpec.of("systemctl", "enable", service, chroot=True),
                check=PostCondition(
                    description=f"{service} is enabled",
                    probe=CommandSpec.of("systemctl", "is-enabled", service, chroot=True),
                    predicate=_is_enabled,
                ),
            ))
        return Stage("packages", steps, depends_on=("users", "bootloader"),
                     description="Installing drivers and the desktop")

    def finalize(self) -> Stage:
        return Stage("finalize", self.disk.teardown_steps(), depends_on=("packages",),
                     description="Unmounting the target")

    def build(self) -> List[Stage]:
        return [getattr(self, name)() for name in STAGE_NAMES]


def _is_enabled(result: CommandResult) -> bool:
    return result.stdout.strip().splitlines()[-1:] == ["enabled"]


def build_stages(config: InstallerConfig, plan: DiskPlan,
                 cpu: CpuVendor = CpuVendor.UNKNOWN, gpu: GpuVendor = GpuVendor.UNKNOWN) -> List[Stage]:
    """The full stage list for `config` installed onto `plan`, in dependency order."""
    return StageBuilder(config, plan, cpu, gpu).build()
