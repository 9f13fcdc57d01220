# arch_provision/config/models.py

from pathlib import Path
from typing import List, Literal, Optional

import tomlkit
import typer
from tomlkit.exceptions import TOMLKitError
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, ValidationInfo, field_validator, model_validator

from arch_provision.disk import DEFAULT_MIN_ROOT_MIB, PartitionRequest, PartitionRole, parse_size
from arch_provision.progress import DEFAULT_STATE_DIR
from arch_provision.utils.exceptions import ConfigError, PlanError

# --- 0. Defaults (the Enlightenment desktop set) ---

DEFAULT_BASE_PACKAGES = [
    "base", "linux-firmware", "dosfstools", "exfatprogs", "f2fs-tools",
    "xfsprogs", "btrfs-progs", "lvm2", "mdadm",
]

DEFAULT_DESKTOP_PACKAGES = [
    "networkmanager", "network-manager-applet", "wireless_tools", "wpa_supplicant",
    "vim", "nano", "base-devel", "git", "bash-completion", "man-db", "man-pages", "texinfo",
    "xorg-server", "xorg-xinit", "xorg-xrandr", "xorg-xsetroot", "xorg-xprop", "xorg-xbacklight",
    "enlightenment", "terminology", "efl", "efl-docs", "lightdm", "lightdm-gtk-greeter",
    "arc-gtk-theme", "papirus-icon-theme", "ttf-dejavu", "ttf-liberation", "noto-fonts",
    "pulseaudio", "pulseaudio-alsa", "pavucontrol", "alsa-utils",
    "smartmontools", "nvme-cli", "bluez", "bluez-utils", "cups", "hplip",
    "firefox", "file-roller", "p7zip", "unrar", "gvfs", "gvfs-mtp", "gvfs-smb", "ntfs-3g", "imagemagick",
    "htop", "fastfetch",
]

DEFAULT_SERVICES = ["NetworkManager", "lightdm", "bluetooth", "cups"]

DEFAULT_USER_GROUPS = ["wheel", "audio", "video", "optical", "storage", "games"]

MIN_PASSWORD_LENGTH = 8

# --- 1. Sub-Models ---

# Disk Configuration
class DataPartition(BaseModel):
    """An optional extra partition placed between swap and root."""
    model_config = ConfigDict(extra="forbid")

    size: str
    filesystem: Literal["ext4", "btrfs", "xfs", "f2fs", "fat32"] = "ext4"
    mountpoint: str = "/data"


class Disk(BaseModel):
    """Target disk and the sizes of its partitions."""
    model_config = ConfigDict(extra="forbid")

    device: str = Field(pattern=r"^/dev/\S+$")
    mode: Literal["auto", "uefi", "bios"] = "auto"
    esp_size: str = "512MiB"
    swap: str = "4GiB"
    root_filesystem: Literal["ext4", "btrfs", "xfs", "f2fs"] = "ext4"
    esp_mountpoint: str = Field("/boot", pattern=r"^/\S*$")
    min_root_size: str = f"{DEFAULT_MIN_ROOT_MIB}MiB"
    data: Optional[DataPartition] = None

    @field_validator("esp_size", "swap", "min_root_size")
    @classmethod
    def _check_size(cls, value: str, info: ValidationInfo) -> str:
        if info.field_name == "swap" and value.strip().lower() == "none":
            return "none"
        try:
            # percentages need a disk size; any positive size passes here
            parse_size(value, 1024 * 1024)
        except PlanError as e:
            raise ValueError(str(e)) from e
        return value

    @property
    def has_swap(self) -> bool:
        return self.swap != "none"


# System Configuration
class System(BaseModel):
    """Locale, time and identity of the installed system."""
    model_config = ConfigDict(extra="forbid")

    hostname: str = Field("Arch-Linux", pattern=r"^[A-Za-z0-9][A-Za-z0-9-]{0,62}$")
    timezone: str = Field("Asia/Manila", pattern=r"^[A-Za-z0-9_+\-]+(/[A-Za-z0-9_+\-]+)*$")
    locale: str = Field("en_US.UTF-8", pattern=r"^[A-Za-z_]+(\.[A-Za-z0-9-]+)?(@\w+)?$")
    keymap: str = Field("us", pattern=r"^[A-Za-z0-9_\-]+$")
    kernel: Literal["linux", "linux-lts"] = "linux"


# Hardware Configuration
class Hardware(BaseModel):
    """CPU microcode and GPU driver selection; auto means detect."""
    model_config = ConfigDict(extra="forbid")

    cpu: Literal["auto", "intel", "amd", "none"] = "auto"
    gpu: Literal["auto", "mesa", "nvidia"] = "auto"


# User Configuration
class User(BaseModel):
    """Configuration for a user account."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(pattern=r"^[a-z_][a-z0-9_-]{0,31}$")
    password: SecretStr
    groups: List[str] = Field(default_factory=lambda: list(DEFAULT_USER_GROUPS))
    sudo: bool = True

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        return value


# Package Configuration
class Packages(BaseModel):
    """Package sets installed by pacstrap (base) and pacman (desktop), and services to enable."""
    model_config = ConfigDict(extra="forbid")

    base: List[str] = Field(default_factory=lambda: list(DEFAULT_BASE_PACKAGES))
    desktop: List[str] = Field(default_factory=lambda: list(DEFAULT_DESKTOP_PACKAGES))
    services: List[str] = Field(default_factory=lambda: list(DEFAULT_SERVICES))


# Engine Configuration
class Engine(BaseModel):
    """Where state and logs live, and how commands are timed."""
    model_config = ConfigDict(extra="forbid")

    state_dir: str = DEFAULT_STATE_DIR
    log_dir: str = "/var/log/arch-provision"
    mount_root: str = Field("/mnt", pattern=r"^/\S*$")
    format_timeout: float = Field(300.0, gt=0)
    command_timeout: float = Field(60.0, gt=0)
    heartbeat_interval: float = Field(30.0, gt=0)


# --- 2. Top-Level Root Model ---

class InstallerConfig(BaseModel):
    """The top-level configuration model representing the entire config.toml file."""
    model_config = ConfigDict(extra="forbid")

    disk: Disk
    system: System = Field(default_factory=System)
    hardware: Hardware = Field(default_factory=Hardware)
    user: List[User] = Field(min_length=1)
    root_password: SecretStr
    packages: Packages = Field(default_factory=Packages)
    engine: Engine = Field(default_factory=Engine)

    @field_validator("root_password")
    @classmethod
    def _check_root_password(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"root_password must be at least {MIN_PASSWORD_LENGTH} characters")
        return value

    @model_validator(mode="after")
    def _check_unique_users(self) -> "InstallerConfig":
        names = [user.name for user in self.user]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate user names: {', '.join(duplicates)}")
        return self

    def partition_requests(self, uefi: bool) -> List[PartitionRequest]:
        """ESP (UEFI only), swap, optional data, root taking the rest."""
        requests: List[PartitionRequest] = []
        if uefi:
            requests.append(PartitionRequest(PartitionRole.ESP, "fat32", self.disk.esp_size, self.disk.esp_mountpoint))
        if self.disk.has_swap:
            requests.append(PartitionRequest(PartitionRole.SWAP, "swap", self.disk.swap))
        if self.disk.data is not None:
            requests.append(PartitionRequest(PartitionRole.DATA, self.disk.data.filesystem,
                                             self.disk.data.size, self.disk.data.mountpoint))
        requests.append(PartitionRequest(PartitionRole.ROOT, self.disk.root_filesystem, "rest", "/"))
        return requests

    def min_root_mib(self) -> int:
        return parse_size(self.disk.min_root_size, 1024 * 1024) or DEFAULT_MIN_ROOT_MIB

    @classmethod
    def load_config_from_file(cls, path: Path) -> 'InstallerConfig':
        """Loads and validates a TOML file against the Pydantic schema."""
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Error reading configuration file {path}: {e}") from e

        try:
            data = tomlkit.parse(content).unwrap()
        except TOMLKitError as e:
            raise ConfigError(f"Invalid TOML format in {path}: {e}") from e

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {path}:\n{e}") from e

    # Helper to safely access sensitive fields (Pydantic V2)
    def _safe_str(self, s: Optional[SecretStr]) -> str:
        """Masks a SecretStr for display; only its length is shown."""
        if not s or not s.get_secret_value():
            return "N/A"
        return "*" * len(s.get_secret_value())

    def display_summary(self) -> str:
        """Generates the summary shown before confirmation (System, Disk, Users, Packages)."""
        s = typer.style("\nGENERAL CONFIGURATION SUMMARY", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        s += f"  Hostname:           {self.system.hostname}\n"
        s += f"  Timezone:           {self.system.timezone}\n"
        s += f"  Locale / Keymap:    {self.system.locale} / {self.system.keymap}\n"
        s += f"  Kernel:             {self.system.kernel}\n"
        s += f"  CPU / GPU:          {self.hardware.cpu} / {self.hardware.gpu}\n"

        s += typer.style("\nDISK", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        s += f"  Device:             {typer.style(self.disk.device, fg=typer.colors.CYAN)} ({typer.style('WIPING', fg=typer.colors.RED)})\n"
        s += f"  Boot mode:          {self.disk.mode}\n"
        s += f"  ESP / Swap:         {self.disk.esp_size} on {self.disk.esp_mountpoint} / {self.disk.swap}\n"
        if self.disk.data is not None:
            s += f"  Data:               {self.disk.data.size} {self.disk.data.filesystem} on {self.disk.data.mountpoint}\n"
        s += f"  Root filesystem:    {self.disk.root_filesystem} (rest of disk)\n"

        s += typer.style("\nUSER DETAILS", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        s += f"  root: Pwd={self._safe_str(self.root_password)}\n"
        for user in self.user:
            s += f"  User '{user.name}': Sudo={user.sudo}, Groups={', '.join(user.groups or ['None'])}, Pwd={self._safe_str(user.password)}\n"

        s += typer.style("\nPACKAGES", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        s += f"  Base:               {len(self.packages.base)} packages\n"
        s += f"  Desktop:            {len(self.packages.desktop)} packages\n"
        s += f"  Services:           {', '.join(self.packages.services) or 'None'}\n"
        return s
