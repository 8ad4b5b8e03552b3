#!/usr/bin/python3
"""hostprep — reconcile a fresh Ubuntu server to a hardened baseline.

Probes the running host, builds a target configuration (built-in defaults or a
guided walk through every setting), shows current vs. target side by side,
and applies only what differs.  Every step lands in a ledger that becomes the
summary report written to the operator's desktop.
"""

import argparse
import getpass
import os
import pwd
import re
import shutil
import socket
import subprocess
import sys
import time
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import yaml

# ── Constants ────────────────────────────────────────────────────────────────

NETPLAN_DIR = Path("/etc/netplan")
STATIC_NETPLAN_PATH = NETPLAN_DIR / "01-static-network.yaml"
JAIL_PATH = Path("/etc/fail2ban/jail.local")
AUTO_UPGRADES_PATH = Path("/etc/apt/apt.conf.d/20auto-upgrades")
TELEMETRY_CONF_PATH = Path("/etc/ubuntu-report/ubuntu-report.conf")
EXPORTS_PATH = Path("/etc/exports")
NFS_SHARE_DIR = Path("/srv/nfs/share")
SMB_CONF_PATH = Path("/etc/samba/smb.conf")
SMB_SHARE_DIR = Path("/srv/samba/share")
SHARE_OWNER = "nobody:nogroup"
BTRFS_SNAPSHOT_DIR = Path("/.snapshots")
RESOLV_CONF_PATH = Path("/etc/resolv.conf")
SYS_CLASS_NET = Path("/sys/class/net")

WEBMIN_SOURCE_PATH = Path("/etc/apt/sources.list.d/webmin.list")
WEBMIN_KEY_PATH = Path("/usr/share/keyrings/webmin-developers.asc")
WEBMIN_KEY_URL = "https://download.webmin.com/developers-key.asc"
WEBMIN_REPO = "https://download.webmin.com/download/newkey/repository stable contrib"

REPORT_PREFIX = "hostprep_configuration_summary"

CAPABILITIES = (
    "webmin", "ufw", "auto_updates", "fail2ban",
    "telemetry_disabled", "nfs", "smb", "git",
)

DEFAULT_CAPABILITIES = {
    "webmin":             False,
    "ufw":                True,
    "auto_updates":       True,
    "fail2ban":           True,
    "telemetry_disabled": True,
    "nfs":                True,
    "smb":                True,
    "git":                True,
}

BASE_PACKAGES = [
    "curl", "ufw", "unattended-upgrades", "apparmor", "net-tools",
    "htop", "vim", "build-essential", "rsync",
]

CAPABILITY_PACKAGES = {
    "webmin":   ["webmin"],
    "fail2ban": ["fail2ban"],
    "nfs":      ["nfs-common", "nfs-kernel-server"],
    "smb":      ["cifs-utils", "samba"],
    "git":      ["git"],
}

DOMAIN_PACKAGES = [
    "realmd", "sssd", "sssd-tools", "adcli", "krb5-user",
    "samba-common-bin", "oddjob", "oddjob-mkhomedir", "packagekit",
]

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

MANAGEMENT_PORT = "22/tcp"
WEBMIN_PORT = "10000/tcp"
NFS_PORTS = ["2049/tcp"]
SMB_PORTS = ["139/tcp", "445/tcp"]

FAIL2BAN_JAIL = """\
[DEFAULT]
bantime = 10m
findtime = 10m
maxretry = 5
banaction = ufw

[sshd]
enabled = true
port = ssh
filter = sshd
logpath = /var/log/auth.log
backend = systemd
"""

AUTO_UPGRADE_DIRECTIVES = {
    "APT::Periodic::Update-Package-Lists": 'APT::Periodic::Update-Package-Lists "1";',
    "APT::Periodic::Unattended-Upgrade":   'APT::Periodic::Unattended-Upgrade "1";',
}

NFS_EXPORT = f"{NFS_SHARE_DIR} *(rw,sync,no_subtree_check,all_squash)"

SMB_SHARE = f"""[share]
   path = {SMB_SHARE_DIR}
   browseable = yes
   read only = no
   guest ok = no
   create mask = 0664
   directory mask = 2775"""

SNAPSHOT_BACKENDS = ("timeshift", "zfs", "btrfs")

# Step outcomes
APPLIED = "APPLIED"
SKIPPED_ALREADY_SATISFIED = "SKIPPED_ALREADY_SATISFIED"
SKIPPED_BY_CONFIG = "SKIPPED_BY_CONFIG"
FAILED = "FAILED"

# Reconciliation order.  Later steps assume earlier ones ran: packages must
# land before services are configured, the firewall must be up before the
# share steps open ports in it.
STEP_ORDER = (
    "snapshot", "hostname", "packages", "network", "fail2ban", "ufw",
    "auto_updates", "telemetry", "domain", "nfs", "smb", "git", "webmin",
)

# A failure here stops the apply phase.
FATAL_STEPS = ("packages", "network")

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_FATAL = 2


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    UNDO     = "\uf0e2"   # rotate-left (rollback point)
    PACKAGE  = "\uf187"   # archive
    WRENCH   = "\uf0ad"   # wrench
    GLOBE    = "\uf0ac"   # globe
    DATABASE = "\uf1c0"   # database
    LINUX    = "\uf17c"   # tux
    SHIELD   = "\uf132"   # shield
    USERS    = "\uf0c0"   # users
    DOWNLOAD = "\uf019"   # download
    BAN      = "\uf05e"   # ban
    STAMP    = "\uf249"   # id-badge
    CODE     = "\uf121"   # code
    DESKTOP  = "\uf108"   # desktop

STEP_ICONS = {
    "snapshot":     _I.UNDO,
    "hostname":     _I.STAMP,
    "packages":     _I.PACKAGE,
    "network":      _I.GLOBE,
    "fail2ban":     _I.BAN,
    "ufw":          _I.SHIELD,
    "auto_updates": _I.DOWNLOAD,
    "telemetry":    _I.EYE,
    "domain":       _I.USERS,
    "nfs":          _I.DATABASE,
    "smb":          _I.DATABASE,
    "git":          _I.CODE,
    "webmin":       _I.DESKTOP,
}

STEP_LABELS = {
    "snapshot":     "Filesystem Snapshot",
    "hostname":     "Hostname",
    "packages":     "Package Installation",
    "network":      "Network",
    "fail2ban":     "Fail2ban",
    "ufw":          "UFW Firewall",
    "auto_updates": "Automatic Updates",
    "telemetry":    "Telemetry",
    "domain":       "Domain Join",
    "nfs":          "NFS Share",
    "smb":          "SMB Share",
    "git":          "Git",
    "webmin":       "Webmin",
}

CAPABILITY_LABELS = {
    "webmin":             "Webmin",
    "ufw":                "UFW Firewall",
    "auto_updates":       "Auto Updates",
    "fail2ban":           "Fail2ban",
    "telemetry_disabled": "Telemetry/Analytics",
    "domain":             "AD Domain Join",
    "nfs":                "NFS Share",
    "smb":                "SMB Share",
    "git":                "Git",
}

CAPABILITY_PLANS = {
    "webmin":             "To be Installed",
    "ufw":                "To be Enabled",
    "auto_updates":       "To be Enabled",
    "fail2ban":           "To be Installed",
    "telemetry_disabled": "To be Disabled",
    "nfs":                "To be Installed",
    "smb":                "To be Installed",
    "git":                "To be Installed",
}

CAPABILITY_QUESTIONS = {
    "webmin":             "Install Webmin?",
    "ufw":                "Enable the UFW firewall?",
    "auto_updates":       "Enable automatic security updates?",
    "fail2ban":           "Install and configure Fail2ban?",
    "telemetry_disabled": "Disable optional telemetry and analytics?",
    "nfs":                "Install NFS and export a shared directory?",
    "smb":                "Install Samba and publish a shared directory?",
    "git":                "Install Git?",
}

# Capability rows in display order; "domain" sits between telemetry and shares.
DISPLAY_ORDER = (
    "webmin", "ufw", "auto_updates", "fail2ban", "telemetry_disabled",
    "domain", "nfs", "smb", "git",
)


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {icon}  {title}  {tag}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


# ── Errors ───────────────────────────────────────────────────────────────────

class ValidationError(ValueError):
    """Operator input or a target field does not satisfy its grammar."""


class StepError(RuntimeError):
    """A reconciliation step could not reach its target state."""


class FatalStepError(RuntimeError):
    """A step that later steps depend on failed; the apply phase stops."""

    def __init__(self, outcome):
        super().__init__(f"{outcome.capability}: {outcome.detail}")
        self.outcome = outcome


# ── OS detection ─────────────────────────────────────────────────────────────

def detect_os() -> tuple:
    """Parse /etc/os-release → (os_id, version_id)."""
    info = {}
    try:
        with open("/etc/os-release") as fh:
            for line in fh:
                line = line.strip()
                if "=" in line:
                    key, _, val = line.partition("=")
                    info[key] = val.strip('"')
    except FileNotFoundError:
        _warn("/etc/os-release not found — cannot detect OS")
        return "unknown", "unknown"

    os_id = info.get("ID", "unknown")
    version_id = info.get("VERSION_ID", "unknown")

    if os_id != "ubuntu":
        _warn(f"Detected {os_id} {version_id} — hostprep targets Ubuntu Server")

    return os_id, version_id


# ── Validation ───────────────────────────────────────────────────────────────

HOSTNAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]*[A-Za-z0-9]$")
# Digit-dot shape only; octet range is checked in strict mode.
IPV4_RE = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+$")

_YES = ("yes", "y")
_NO = ("no", "n")


def parse_yes_no(raw, default: bool) -> bool:
    """Map an answer to a bool.  Empty input takes *default*.

    Accepts yes/y/no/n in any case; anything else raises ValidationError.
    """
    answer = (raw or "").strip().lower()
    if not answer:
        return default
    if answer in _YES:
        return True
    if answer in _NO:
        return False
    raise ValidationError(f"please answer yes or no (got '{raw.strip()}')")


def validate_hostname(value: str) -> str:
    name = (value or "").strip()
    if len(name) > 253 or not HOSTNAME_RE.match(name):
        raise ValidationError(
            f"'{name}' is not a valid hostname (e.g. my-server)")
    if any(not 1 <= len(label) <= 63 for label in name.split(".")):
        raise ValidationError(
            f"'{name}' has an empty label or one longer than 63 characters")
    if re.fullmatch(r"[0-9.]+", name):
        raise ValidationError(f"'{name}' is all-numeric")
    return name


def validate_ipv4(value: str, strict: bool = False) -> str:
    addr = (value or "").strip()
    if not IPV4_RE.match(addr):
        raise ValidationError(f"'{addr}' is not a dotted IPv4 address")
    if strict and any(int(octet) > 255 for octet in addr.split(".")):
        raise ValidationError(f"'{addr}' has an octet outside 0-255")
    return addr


def validate_prefix(value) -> int:
    text = str(value if value is not None else "").strip()
    if not re.fullmatch(r"[0-9]+", text) or not 8 <= int(text) <= 32:
        raise ValidationError(f"'{text}' is not a prefix length between 8 and 32")
    return int(text)


def validate_interface(value: str, available) -> str:
    name = (value or "").strip()
    if name not in available:
        raise ValidationError(f"interface '{name}' not found on this host")
    return name


def _require_text(value: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError("a value is required")
    return text


# ── Data model ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SystemFacts:
    """Snapshot of host state taken once per probe.

    Undeterminable facts hold a sentinel ("unknown", "N/A", False or None)
    rather than aborting the probe.
    """
    hostname: str = "unknown"
    interface: str = "unknown"
    ip_cidr: str = "N/A"
    gateway: str = "N/A"
    dns: str = "N/A"
    net_mode: str = "unknown"
    webmin_installed: bool = False
    ufw_status: str = "unknown"
    auto_updates_status: str = "disabled"
    fail2ban_installed: bool = False
    telemetry_status: str = "disabled"
    domain_name: str | None = None
    nfs_installed: bool = False
    smb_installed: bool = False
    git_installed: bool = False
    snapshot_backend: str | None = None

    @property
    def ip(self) -> str:
        return self.ip_cidr.split("/", 1)[0]

    @property
    def prefix(self) -> str:
        if "/" in self.ip_cidr:
            return self.ip_cidr.split("/", 1)[1]
        return "24"


@dataclass
class NetworkTarget:
    mode: str = "dhcp"
    interface: str | None = None
    ip: str | None = None
    prefix: int | None = None
    gateway: str | None = None
    dns: str | None = None

    @property
    def is_static(self) -> bool:
        return self.mode == "static"


@dataclass
class DomainJoin:
    join: bool = False
    domain_name: str | None = None
    admin_user: str | None = None
    admin_password: str | None = field(default=None, repr=False)


@dataclass
class DesiredState:
    """The complete target configuration for one run."""
    hostname: str
    network: NetworkTarget = field(default_factory=NetworkTarget)
    capabilities: dict = field(default_factory=lambda: dict(DEFAULT_CAPABILITIES))
    domain: DomainJoin = field(default_factory=DomainJoin)
    snapshot: bool = False

    def enabled(self, capability: str) -> bool:
        return bool(self.capabilities.get(capability, False))

    def validate(self, strict_ipv4: bool = False) -> None:
        """Raise ValidationError naming every incomplete or malformed field."""
        problems = []

        def check(label, func, *args):
            try:
                func(*args)
            except ValidationError as exc:
                problems.append(f"{label}: {exc}")

        check("hostname", validate_hostname, self.hostname)

        net = self.network
        if net.mode not in ("dhcp", "static"):
            problems.append(f"network.mode: '{net.mode}' is not dhcp or static")
        if net.is_static:
            check("network.interface", _require_text, net.interface)
            check("network.ip", validate_ipv4, net.ip, strict_ipv4)
            check("network.prefix", validate_prefix, net.prefix)
            check("network.gateway", validate_ipv4, net.gateway, strict_ipv4)
            check("network.dns", validate_ipv4, net.dns, strict_ipv4)

        missing = set(CAPABILITIES) - set(self.capabilities)
        unknown = set(self.capabilities) - set(CAPABILITIES)
        if missing:
            problems.append(f"capabilities: missing {', '.join(sorted(missing))}")
        if unknown:
            problems.append(f"capabilities: unknown {', '.join(sorted(unknown))}")

        if self.domain.join:
            check("domain.domain_name", validate_hostname, self.domain.domain_name)
            check("domain.admin_user", _require_text, self.domain.admin_user)
            if not self.domain.admin_password:
                problems.append("domain.admin_password: a value is required")

        if problems:
            raise ValidationError("; ".join(problems))


@dataclass(frozen=True)
class StepOutcome:
    capability: str
    action: str
    detail: str = ""


class Ledger:
    """Ordered, append-only record of what each reconciliation step did.

    Each capability is recorded at most once; the report is rendered from
    this alone.
    """

    def __init__(self):
        self._outcomes: list = []

    def append(self, outcome: StepOutcome) -> None:
        if self.get(outcome.capability) is not None:
            raise ValueError(f"'{outcome.capability}' is already recorded")
        self._outcomes.append(outcome)

    def get(self, capability: str):
        for outcome in self._outcomes:
            if outcome.capability == capability:
                return outcome
        return None

    def actions(self) -> dict:
        return {o.capability: o.action for o in self._outcomes}

    def failed(self) -> list:
        return [o for o in self._outcomes if o.action == FAILED]

    def __iter__(self):
        return iter(tuple(self._outcomes))

    def __len__(self) -> int:
        return len(self._outcomes)


# ── State probe ──────────────────────────────────────────────────────────────

def _rooted(root: Path, path: Path) -> Path:
    return root / path.relative_to("/")


def _find_key(node, key: str):
    """Yield every value stored under *key* anywhere in a YAML tree."""
    if isinstance(node, dict):
        for k, v in node.items():
            if k == key:
                yield v
            yield from _find_key(v, key)
    elif isinstance(node, list):
        for item in node:
            yield from _find_key(item, key)


class SystemInspector:
    """Read-only queries against the running host, one method per fact.

    A missing tool or an empty answer resolves to a sentinel.  Nothing here
    changes the system.
    """

    def __init__(self, root=None):
        self.root = Path(root) if root else Path("/")

    def _query(self, cmd) -> str:
        try:
            r = subprocess.run(cmd, capture_output=True, text=True)
        except OSError:
            return ""
        if r.returncode != 0:
            return ""
        return r.stdout

    def _succeeds(self, cmd) -> bool:
        try:
            r = subprocess.run(cmd, capture_output=True, text=True)
        except OSError:
            return False
        return r.returncode == 0

    def _read(self, path: Path) -> str:
        try:
            with open(_rooted(self.root, path), errors="replace") as fh:
                return fh.read()
        except OSError:
            return ""

    def hostname(self) -> str:
        return socket.gethostname() or "unknown"

    def primary_ipv4(self) -> tuple:
        """First non-loopback IPv4 address in kernel order → (iface, cidr)."""
        for line in self._query(["ip", "-o", "-4", "addr", "show"]).splitlines():
            parts = line.split()
            if len(parts) >= 4 and parts[1] != "lo" and parts[2] == "inet":
                return parts[1], parts[3]
        return "unknown", "N/A"

    def default_gateway(self) -> str:
        for line in self._query(["ip", "route", "show", "default"]).splitlines():
            parts = line.split()
            if "via" in parts:
                idx = parts.index("via")
                if idx + 1 < len(parts):
                    return parts[idx + 1]
        return "N/A"

    def dns_server(self) -> str:
        for line in self._query(["resolvectl", "status"]).splitlines():
            if "DNS Servers:" in line:
                servers = line.split(":", 1)[1].split()
                if servers:
                    return servers[0]
        # systemd-resolved's stub address says nothing about the upstream
        for line in self._read(RESOLV_CONF_PATH).splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "nameserver" \
                    and not parts[1].startswith("127.0.0.53"):
                return parts[1]
        return "N/A"

    def net_mode(self) -> str:
        """'dhcp' if any netplan file enables dhcp4, 'static' if one disables it."""
        values = []
        for path in sorted(_rooted(self.root, NETPLAN_DIR).glob("*.yaml")):
            try:
                with open(path, errors="replace") as fh:
                    doc = yaml.safe_load(fh)
            except (OSError, yaml.YAMLError):
                continue
            values.extend(_find_key(doc, "dhcp4"))
        if any(v is True for v in values):
            return "dhcp"
        if any(v is False for v in values):
            return "static"
        return "unknown"

    def package_installed(self, name: str) -> bool:
        out = self._query(["dpkg-query", "-W", "-f=${Status}", name])
        return "install ok installed" in out

    def ufw_status(self) -> str:
        for line in self._query(["ufw", "status"]).splitlines():
            if line.startswith("Status:"):
                return line.split(":", 1)[1].strip().lower() or "unknown"
        return "unknown"

    def auto_updates_status(self) -> str:
        text = self._read(AUTO_UPGRADES_PATH)
        if re.search(r'^\s*APT::Periodic::Unattended-Upgrade\s+"1"', text, re.M):
            return "enabled"
        return "disabled"

    def telemetry_status(self) -> str:
        if not self.package_installed("ubuntu-report"):
            return "disabled"
        text = self._read(TELEMETRY_CONF_PATH)
        if re.search(r"^\s*enable\s*=\s*true", text, re.M):
            return "enabled"
        return "disabled"

    def domain_name(self):
        for line in self._query(["realm", "list"]).splitlines():
            line = line.strip()
            if line.startswith("realm-name:"):
                return line.split(":", 1)[1].strip() or None
        return None

    def interfaces(self) -> list:
        try:
            names = os.listdir(_rooted(self.root, SYS_CLASS_NET))
        except OSError:
            return []
        return sorted(n for n in names if n != "lo")

    def service_active(self, name: str) -> bool:
        return self._succeeds(["systemctl", "is-active", "--quiet", name])

    def zfs_root_dataset(self):
        out = self._query(["zfs", "list", "-H", "-o", "name,mountpoint",
                           "-t", "filesystem"])
        for line in out.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == "/":
                return parts[0]
        return None

    def root_fstype(self) -> str:
        return self._query(["findmnt", "-n", "-o", "FSTYPE", "/"]).strip() or "unknown"

    def snapshot_backends(self) -> list:
        """Usable snapshot tools, highest priority first."""
        found = []
        if shutil.which("timeshift"):
            found.append("timeshift")
        if shutil.which("zfs") and self.zfs_root_dataset():
            found.append("zfs")
        if shutil.which("btrfs") and self.root_fstype() == "btrfs":
            found.append("btrfs")
        return found


def probe_facts(inspector: SystemInspector) -> SystemFacts:
    """Take one best-effort snapshot of host state."""
    interface, ip_cidr = inspector.primary_ipv4()

    def installed(capability):
        return all(inspector.package_installed(p)
                   for p in CAPABILITY_PACKAGES[capability])

    available = inspector.snapshot_backends()
    backends = [b for b in SNAPSHOT_BACKENDS if b in available]
    return SystemFacts(
        hostname=inspector.hostname(),
        interface=interface,
        ip_cidr=ip_cidr,
        gateway=inspector.default_gateway(),
        dns=inspector.dns_server(),
        net_mode=inspector.net_mode(),
        webmin_installed=installed("webmin"),
        ufw_status=inspector.ufw_status(),
        auto_updates_status=inspector.auto_updates_status(),
        fail2ban_installed=installed("fail2ban"),
        telemetry_status=inspector.telemetry_status(),
        domain_name=inspector.domain_name(),
        nfs_installed=installed("nfs"),
        smb_installed=installed("smb"),
        git_installed=installed("git"),
        snapshot_backend=backends[0] if backends else None,
    )


def describe_fact(facts, capability: str) -> str:
    """Current state of a managed capability as shown to the operator."""
    if facts is None:
        return "N/A"
    if capability == "ufw":
        return facts.ufw_status.capitalize()
    if capability == "auto_updates":
        return facts.auto_updates_status.capitalize()
    if capability == "telemetry_disabled":
        return facts.telemetry_status.capitalize()
    if capability == "domain":
        return facts.domain_name or "Not Joined"
    return "Installed" if getattr(facts, f"{capability}_installed") else "Not Installed"


# ── Operator prompts ─────────────────────────────────────────────────────────

def ask(question: str, default: str, convert):
    """Prompt until *convert* accepts the answer; empty input takes *default*."""
    suffix = f" [{default}]" if default else ""
    while True:
        raw = input(f"  {question}{suffix}: ").strip()
        try:
            return convert(raw or default)
        except ValidationError as exc:
            _warn(f"Invalid input: {exc}")


def ask_yes_no(question: str, default: bool) -> bool:
    shown = "yes" if default else "no"
    return ask(f"{question} (yes/no)", shown,
               lambda raw: parse_yes_no(raw, default))


def ask_choice(question: str, choices: tuple, default: str) -> str:
    def convert(raw):
        value = raw.strip().lower()
        if value not in choices:
            raise ValidationError(f"choose one of {', '.join(choices)}")
        return value
    return ask(f"{question} ({'/'.join(choices)})", default, convert)


def ask_secret(prompt: str) -> str:
    """Read a value with echo off; the answer is never logged."""
    while True:
        value = getpass.getpass(f"  {prompt}")
        if value:
            return value
        _warn("Invalid input: a value is required")


# ── Desired state ────────────────────────────────────────────────────────────

class DesiredStateBuilder:
    """Derive a DesiredState from built-in defaults or a guided walk."""

    def __init__(self, before: SystemFacts, inspector: SystemInspector,
                 strict_ipv4: bool = False):
        self.before = before
        self.inspector = inspector
        self.strict_ipv4 = strict_ipv4

    def defaults(self) -> DesiredState:
        state = DesiredState(
            hostname=self.before.hostname,
            network=NetworkTarget(mode="dhcp"),
            capabilities=dict(DEFAULT_CAPABILITIES),
            domain=DomainJoin(join=False),
            snapshot=self.before.snapshot_backend is not None,
        )
        state.validate(strict_ipv4=self.strict_ipv4)
        return state

    def guided(self) -> DesiredState:
        snapshot = False
        backend = self.before.snapshot_backend
        if backend:
            _info(f"{_I.UNDO}  {backend} snapshot support detected")
            snapshot = ask_yes_no(
                f"Create a {backend} snapshot before applying changes?", True)
        else:
            _skip("No supported snapshot utility (timeshift, zfs, btrfs) — "
                  "snapshot will be skipped")

        hostname = ask("Desired hostname for this machine",
                       self.before.hostname, validate_hostname)
        network = self._ask_network()

        capabilities = {}
        for capability in CAPABILITIES:
            capabilities[capability] = ask_yes_no(
                CAPABILITY_QUESTIONS[capability],
                self._capability_default(capability),
            )

        state = DesiredState(
            hostname=hostname,
            network=network,
            capabilities=capabilities,
            domain=self._ask_domain(),
            snapshot=snapshot,
        )
        state.validate(strict_ipv4=self.strict_ipv4)
        return state

    def _capability_default(self, capability: str) -> bool:
        """Built-in default, or yes when the host already has it."""
        current = {
            "webmin":       self.before.webmin_installed,
            "ufw":          self.before.ufw_status == "active",
            "auto_updates": self.before.auto_updates_status == "enabled",
            "fail2ban":     self.before.fail2ban_installed,
            "nfs":          self.before.nfs_installed,
            "smb":          self.before.smb_installed,
            "git":          self.before.git_installed,
        }.get(capability, False)
        return DEFAULT_CAPABILITIES[capability] or current

    def _ask_network(self) -> NetworkTarget:
        mode = ask_choice("Use DHCP or a static IP?", ("dhcp", "static"), "dhcp")
        if mode == "dhcp":
            return NetworkTarget(mode="dhcp")

        interfaces = self.inspector.interfaces()
        if not interfaces:
            _warn("No non-loopback network interfaces found — keeping DHCP")
            return NetworkTarget(mode="dhcp")
        _info(f"{_I.GLOBE}  Available interfaces: {', '.join(interfaces)}")

        strict = self.strict_ipv4
        net = NetworkTarget(
            mode="static",
            interface=ask("Network interface name", interfaces[0],
                          lambda v: validate_interface(v, interfaces)),
            ip=ask("Static IP address", self.before.ip,
                   lambda v: validate_ipv4(v, strict)),
            prefix=ask("Network prefix length (CIDR, 8-32)", self.before.prefix,
                       validate_prefix),
            gateway=ask("Gateway IP address", self.before.gateway,
                        lambda v: validate_ipv4(v, strict)),
            dns=ask("DNS server IP address", self.before.dns,
                    lambda v: validate_ipv4(v, strict)),
        )

        print()
        _warn("Incorrect static settings can cut this host off the network; "
              "recovering may need console access.")
        if not ask_yes_no("Continue with the static configuration?", True):
            _warn("Static configuration discarded — keeping DHCP")
            return NetworkTarget(mode="dhcp")
        return net

    def _ask_domain(self) -> DomainJoin:
        if self.before.domain_name:
            _info(f"{_I.USERS}  This host is joined to {self.before.domain_name}")
            join = ask_yes_no("Leave this domain and join another?", False)
        else:
            join = ask_yes_no("Join an Active Directory domain?", False)
        if not join:
            return DomainJoin(join=False)

        domain_name = ask("Active Directory domain name (e.g. corp.example.com)",
                          "", validate_hostname)
        admin_user = ask("Domain administrator username", "", _require_text)
        _info("The password will not be displayed as you type.")
        return DomainJoin(
            join=True,
            domain_name=domain_name,
            admin_user=admin_user,
            admin_password=ask_secret("Password: "),
        )


# ── Diff ─────────────────────────────────────────────────────────────────────

def planned_change(target: DesiredState, capability: str) -> str:
    if capability == "domain":
        if target.domain.join:
            return f"To be Joined: {target.domain.domain_name}"
        return "Skipped"
    return CAPABILITY_PLANS[capability] if target.enabled(capability) else "Skipped"


def diff_rows(before: SystemFacts, target: DesiredState) -> list:
    """One (label, current, target) row per managed field.

    Static addressing rows appear only when the target is static.
    """
    rows = [
        ("Hostname", before.hostname, target.hostname),
        ("Network Type", before.net_mode, target.network.mode),
    ]
    if target.network.is_static:
        net = target.network
        rows += [
            ("IP Address", before.ip_cidr, f"{net.ip}/{net.prefix}"),
            ("Gateway", before.gateway, net.gateway),
            ("DNS Server", before.dns, net.dns),
        ]
    rows.append(("Filesystem Snapshot", before.snapshot_backend or "N/A",
                 "yes" if target.snapshot else "no"))
    for capability in DISPLAY_ORDER:
        rows.append((CAPABILITY_LABELS[capability],
                     describe_fact(before, capability),
                     planned_change(target, capability)))
    return rows


def _cell(value) -> str:
    if value is None or value == "":
        return "N/A"
    return str(value)


def render_table(headers: tuple, rows: list, widths: tuple) -> list:
    """Fixed-width, pipe-separated table lines."""
    def fmt(cells):
        padded = [f"{_cell(c):<{w}}" for c, w in zip(cells, widths)]
        return " | ".join(padded).rstrip()

    lines = [fmt(headers), "-|-".join("-" * w for w in widths)]
    lines += [fmt(row) for row in rows]
    return lines


DIFF_HEADERS = ("Setting", "Original Value", "New Value")
DIFF_WIDTHS = (30, 20, 20)


def confirm_diff(rows: list, hostname: str, assume_yes: bool = False) -> None:
    """Show the diff and ask for confirmation.

    Exits with EXIT_ABORTED before any mutation if the operator declines.
    """
    print()
    print(f"  {_C.BOLD}Planned configuration for {hostname}:{_C.RESET}")
    for line in render_table(DIFF_HEADERS, rows, DIFF_WIDTHS):
        print(f"    {line}")
    print()

    if assume_yes:
        return

    try:
        proceed = ask_yes_no("Does the above configuration look correct?", True)
    except (EOFError, KeyboardInterrupt):
        print()
        proceed = False

    if not proceed:
        _error("Execution aborted by operator — nothing was changed.")
        sys.exit(EXIT_ABORTED)
    print()


# ── Snapshot guard ───────────────────────────────────────────────────────────

class SnapshotGuard:
    """Create one pre-change rollback point with the best available tool."""

    def __init__(self, inspector: SystemInspector, run_cmd,
                 snapshot_dir: Path = BTRFS_SNAPSHOT_DIR, clock=datetime.now):
        self.inspector = inspector
        self.run_cmd = run_cmd
        self.snapshot_dir = snapshot_dir
        self.clock = clock

    def select_backend(self):
        available = self.inspector.snapshot_backends()
        for backend in SNAPSHOT_BACKENDS:
            if backend in available:
                return backend
        return None

    def snapshot_id(self) -> str:
        return f"hostprep-pre-config-{self.clock():%Y%m%d-%H%M%S}"

    def create(self) -> tuple:
        backend = self.select_backend()
        if backend is None:
            return SKIPPED_BY_CONFIG, "no snapshot backend available"

        snap_id = self.snapshot_id()
        _info(f"{_I.UNDO}  Creating {backend} snapshot {snap_id}")
        if backend == "timeshift":
            self.run_cmd(["timeshift", "--create", "--comments",
                          f"hostprep pre-config snapshot {snap_id}"])
        elif backend == "zfs":
            dataset = self.inspector.zfs_root_dataset()
            if not dataset:
                raise StepError("ZFS root dataset not found")
            self.run_cmd(["zfs", "snapshot", f"{dataset}@{snap_id}"])
        else:
            if not self.snapshot_dir.exists():
                self.run_cmd(["btrfs", "subvolume", "create",
                              str(BTRFS_SNAPSHOT_DIR)])
            self.run_cmd(["btrfs", "subvolume", "snapshot", "-r", "/",
                          f"{BTRFS_SNAPSHOT_DIR}/{snap_id}"])
        return APPLIED, f"{backend}: {snap_id}"


# ── Netplan ──────────────────────────────────────────────────────────────────

def render_netplan(net: NetworkTarget) -> str:
    doc = {
        "network": {
            "version": 2,
            "ethernets": {
                net.interface: {
                    "dhcp4": False,
                    "addresses": [f"{net.ip}/{net.prefix}"],
                    "routes": [{"to": "default", "via": net.gateway}],
                    "nameservers": {"addresses": [net.dns]},
                },
            },
        },
    }
    header = "# Written by hostprep. Delete this file to return to DHCP.\n"
    return header + yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


# ── Reconciler ───────────────────────────────────────────────────────────────

class Reconciler:
    """Apply a DesiredState one step at a time, recording each outcome."""

    def __init__(self, before: SystemFacts, target: DesiredState,
                 inspector: SystemInspector, dry_run: bool = False,
                 quiet: bool = False, root=None, strict_ipv4: bool = False):
        target.validate(strict_ipv4=strict_ipv4)
        self.before = before
        self.target = target
        self.inspector = inspector
        self.dry_run = dry_run
        self.quiet = quiet
        self.root = Path(root) if root else Path("/")
        self.ledger = Ledger()
        self._step = 0
        self._total = len(STEP_ORDER)

    # ── helpers ───────────────────────────────────────────────────────────

    def path(self, path: Path) -> Path:
        """Resolve a managed absolute path under this reconciler's root."""
        return _rooted(self.root, path)

    def run_cmd(self, cmd, check=True, capture=False, input_text=None, env=None):
        """Execute *cmd*, or print it if --dry-run.

        *input_text* is fed to stdin and never echoed.  With --quiet the
        "Running:" echo is suppressed; warnings and errors still print.
        """
        pretty = " ".join(str(c) for c in cmd)
        if self.dry_run:
            _dry(pretty)
            return None
        if not self.quiet:
            _info(f"Running: {pretty}")
        result = subprocess.run(
            cmd, check=check,
            capture_output=capture,
            text=capture or input_text is not None,
            input=input_text,
            env={**os.environ, **env} if env else None,
        )
        if not check and result.returncode != 0:
            _warn(f"  ↳ exited {result.returncode}: {pretty}")
        return result

    def _ensure_dir(self, path: Path) -> bool:
        """Create directory when needed.  True if it was (or would be) created."""
        if path.exists():
            return False
        if self.dry_run:
            _dry(f"mkdir -p {path}")
            return True
        path.mkdir(parents=True, exist_ok=True)
        _info(f"Created dir {path}")
        return True

    def _write_managed_text(self, path: Path, content: str, mode: int = 0o644) -> bool:
        """Write *content* unless the file already holds it.  True on change."""
        exists = path.exists()

        if exists:
            with open(path, errors="surrogateescape") as fh:
                if fh.read() == content:
                    _info(f"No change needed: {path}")
                    return False

        if self.dry_run:
            action = "update" if exists else "create"
            _dry(f"{action} file {path}")
            return True

        self._ensure_dir(path.parent)
        with open(path, "w", errors="surrogateescape") as fh:
            fh.write(content)
        os.chmod(path, mode)
        if not self.quiet:
            _info(f"Wrote {path}")
        return True

    def _apply_directives(self, path: Path, directives: dict,
                          create_if_missing: bool = False) -> bool:
        """Apply multiple key→line directive replacements to a file in one pass.

        Each key is matched against commented (# or //) or uncommented lines;
        the first match is replaced with the supplied line and every later
        match is dropped.  Unmatched keys are appended, so a key appears
        exactly once.
        """
        if path.exists():
            with open(path, errors="surrogateescape") as fh:
                text = fh.read()
        elif create_if_missing:
            text = ""
        else:
            for key in directives:
                _warn(f"{path} not found — skipping directive '{key}'")
            return False

        key_res = {
            key: re.compile(r"^\s*((#|//)\s*)?" + re.escape(key) + r"(\s|=)")
            for key in directives
        }
        lines = []
        placed = set()

        for existing in text.splitlines():
            key = next((k for k, key_re in key_res.items()
                        if key_re.match(existing)), None)
            if key is None:
                lines.append(existing)
            elif key not in placed:
                lines.append(directives[key])
                placed.add(key)

        for key, line in directives.items():
            if key not in placed:
                lines.append(line)

        out = "\n".join(lines) + "\n"
        return self._write_managed_text(path, out)

    def _append_managed_block(self, path: Path, marker: str, block: str,
                              mode: int = 0o644, create_if_missing: bool = True) -> bool:
        """Append an idempotent hostprep-managed block.  True if appended."""
        begin = f"# BEGIN HOSTPREP {marker}"
        end = f"# END HOSTPREP {marker}"
        wrapped = f"{begin}\n{block.rstrip()}\n{end}\n"

        if path.exists():
            with open(path, errors="surrogateescape") as fh:
                current = fh.read()
        else:
            if not create_if_missing:
                _warn(f"{path} not found — skipping block '{marker}'")
                return False
            current = ""

        if begin in current:
            _info(f"Block already present in {path}: {marker}")
            return False

        prefix = current
        if prefix and not prefix.endswith("\n"):
            prefix += "\n"
        if prefix and not prefix.endswith("\n\n"):
            prefix += "\n"

        return self._write_managed_text(path, prefix + wrapped, mode=mode)

    def _next_step(self, step_name: str) -> None:
        self._step += 1
        _section(STEP_ICONS[step_name], STEP_LABELS[step_name],
                 self._step, self._total)

    def _firewall_enabled(self) -> bool:
        ufw = self.ledger.get("ufw")
        if ufw is not None and ufw.action == APPLIED:
            return True
        return self.before.ufw_status == "active"

    def _allow_ports(self, ports) -> None:
        if not self._firewall_enabled():
            return
        for port in ports:
            self.run_cmd(["ufw", "allow", port])

    def _ensure_installed(self, capability: str) -> bool:
        """Install any missing package of *capability*.

        True when the capability was not installed before this run.
        """
        packages = CAPABILITY_PACKAGES[capability]
        missing = [p for p in packages if not self.inspector.package_installed(p)]
        if missing:
            self.run_cmd(["apt-get", "install", "-y", *missing], env=APT_ENV)
            if not self.dry_run:
                still = [p for p in missing if not self.inspector.package_installed(p)]
                if still:
                    raise StepError(f"not installed after apt-get: {', '.join(still)}")
        return not getattr(self.before, f"{capability}_installed")

    # ── apply entry point ─────────────────────────────────────────────────

    def run(self) -> Ledger:
        """Visit every step in STEP_ORDER.

        Raises FatalStepError when a step in FATAL_STEPS fails; the ledger
        keeps everything recorded up to that point.
        """
        for name in STEP_ORDER:
            self._run_step(name, getattr(self, f"step_{name}"))
        return self.ledger

    def _run_step(self, capability: str, func) -> StepOutcome:
        self._next_step(capability)
        try:
            action, detail = func()
        except subprocess.CalledProcessError as exc:
            cmd = " ".join(str(c) for c in exc.cmd)
            action, detail = FAILED, f"'{cmd}' exited {exc.returncode}"
        except (OSError, UnicodeError, StepError) as exc:
            action, detail = FAILED, str(exc)

        outcome = StepOutcome(capability, action, detail)
        self.ledger.append(outcome)
        _print_outcome(outcome)

        if action == FAILED and capability in FATAL_STEPS:
            raise FatalStepError(outcome)
        return outcome

    # ── steps ─────────────────────────────────────────────────────────────

    def step_snapshot(self) -> tuple:
        if not self.target.snapshot:
            return SKIPPED_BY_CONFIG, "snapshot not requested"
        guard = SnapshotGuard(self.inspector, self.run_cmd,
                              snapshot_dir=self.path(BTRFS_SNAPSHOT_DIR))
        return guard.create()

    def step_hostname(self) -> tuple:
        wanted = self.target.hostname
        if wanted == self.before.hostname:
            return SKIPPED_ALREADY_SATISFIED, f"hostname is already '{wanted}'"
        self.run_cmd(["hostnamectl", "set-hostname", wanted])
        return APPLIED, f"hostname set to '{wanted}' (was '{self.before.hostname}')"

    def required_packages(self) -> list:
        """Base set plus the packages of every enabled capability, in order."""
        packages = list(BASE_PACKAGES)
        for capability in CAPABILITIES:
            if self.target.enabled(capability):
                packages += CAPABILITY_PACKAGES.get(capability, [])
        if self.target.domain.join:
            packages += DOMAIN_PACKAGES
        return list(dict.fromkeys(packages))

    def missing_packages(self) -> list:
        return [p for p in self.required_packages()
                if not self.inspector.package_installed(p)]

    def step_packages(self) -> tuple:
        missing = self.missing_packages()
        if not missing:
            return SKIPPED_ALREADY_SATISFIED, "all required packages already installed"

        if "webmin" in missing:
            self._ensure_webmin_repo()

        _info(f"{_I.DOWNLOAD}  Installing {len(missing)} package(s): "
              f"{', '.join(missing)}")
        self.run_cmd(["apt-get", "update"], env=APT_ENV)
        self.run_cmd(["apt-get", "install", "-y", *missing], env=APT_ENV)
        return APPLIED, f"installed {', '.join(missing)}"

    def _ensure_webmin_repo(self) -> None:
        """Webmin is not in the Ubuntu archive; add its apt source and key."""
        key = self.path(WEBMIN_KEY_PATH)
        if not key.exists():
            if self.dry_run:
                _dry(f"download {WEBMIN_KEY_URL} → {key}")
            else:
                self._ensure_dir(key.parent)
                _info(f"{_I.DOWNLOAD}  Downloading Webmin signing key → {key}")
                urllib.request.urlretrieve(WEBMIN_KEY_URL, key)
        self._write_managed_text(
            self.path(WEBMIN_SOURCE_PATH),
            f"deb [signed-by={WEBMIN_KEY_PATH}] {WEBMIN_REPO}\n",
        )

    def step_network(self) -> tuple:
        net = self.target.network
        descriptor = self.path(STATIC_NETPLAN_PATH)

        if not net.is_static:
            if not descriptor.exists():
                if self.before.net_mode == "static":
                    _warn("Static addressing comes from a netplan file hostprep "
                          "did not write — leaving it unchanged")
                    return SKIPPED_BY_CONFIG, ("static config not written by "
                                               "hostprep; left unchanged")
                return SKIPPED_ALREADY_SATISFIED, "already using DHCP"
            if self.dry_run:
                _dry(f"rm {descriptor}")
            else:
                descriptor.unlink()
                _info(f"Removed {descriptor}")
            self.run_cmd(["netplan", "apply"])
            return APPLIED, "static descriptor removed; switched to DHCP"

        # Static targets are always re-rendered and re-applied.
        self._write_managed_text(descriptor, render_netplan(net), mode=0o600)
        self.run_cmd(["netplan", "apply"])
        return APPLIED, (f"static {net.ip}/{net.prefix} via {net.gateway}, "
                         f"dns {net.dns} on {net.interface}")

    def step_fail2ban(self) -> tuple:
        if not self.target.enabled("fail2ban"):
            return SKIPPED_BY_CONFIG, "not requested; existing installation left as-is"

        running = self.inspector.service_active("fail2ban")
        changed = self._write_managed_text(self.path(JAIL_PATH), FAIL2BAN_JAIL)
        if not changed and running:
            return SKIPPED_ALREADY_SATISFIED, "jail policy current and fail2ban running"

        if running:
            self.run_cmd(["systemctl", "restart", "fail2ban"])
        else:
            self.run_cmd(["systemctl", "daemon-reload"])
            self.run_cmd(["systemctl", "enable", "--now", "fail2ban"])
        return APPLIED, "sshd jail (bantime 10m, findtime 10m, maxretry 5); fail2ban running"

    def step_ufw(self) -> tuple:
        if not self.target.enabled("ufw"):
            return SKIPPED_BY_CONFIG, "firewall not requested"
        if self.before.ufw_status == "active":
            return SKIPPED_ALREADY_SATISFIED, "ufw already active"

        self.run_cmd(["ufw", "default", "deny", "incoming"])
        self.run_cmd(["ufw", "default", "allow", "outgoing"])
        self.run_cmd(["ufw", "allow", MANAGEMENT_PORT])
        self.run_cmd(["ufw", "--force", "enable"])
        return APPLIED, f"deny incoming, allow outgoing, allow {MANAGEMENT_PORT}; enabled"

    def step_auto_updates(self) -> tuple:
        if not self.target.enabled("auto_updates"):
            return SKIPPED_BY_CONFIG, "automatic updates not requested"
        changed = self._apply_directives(self.path(AUTO_UPGRADES_PATH),
                                         AUTO_UPGRADE_DIRECTIVES,
                                         create_if_missing=True)
        if not changed:
            return SKIPPED_ALREADY_SATISFIED, "periodic updates and unattended-upgrade already on"
        return APPLIED, f"periodic updates and unattended-upgrade on in {AUTO_UPGRADES_PATH}"

    def step_telemetry(self) -> tuple:
        if not self.target.enabled("telemetry_disabled"):
            return SKIPPED_BY_CONFIG, "telemetry left as-is"
        conf = self.path(TELEMETRY_CONF_PATH)
        if not conf.exists():
            _warn(f"{TELEMETRY_CONF_PATH} not found — nothing to disable")
            return SKIPPED_ALREADY_SATISFIED, f"{TELEMETRY_CONF_PATH} not present"
        if not self._apply_directives(conf, {"enable": "enable = false"}):
            return SKIPPED_ALREADY_SATISFIED, "telemetry already disabled"
        return APPLIED, "ubuntu-report disabled"

    def step_domain(self) -> tuple:
        domain = self.target.domain
        if not domain.join:
            return SKIPPED_BY_CONFIG, "domain join not requested"

        if self.before.domain_name:
            _info(f"{_I.USERS}  Leaving {self.before.domain_name}")
            self.run_cmd(["realm", "leave", self.before.domain_name])

        _info(f"{_I.USERS}  Joining {domain.domain_name} as {domain.admin_user}")
        self.run_cmd(["realm", "join", f"--user={domain.admin_user}",
                      domain.domain_name],
                     input_text=f"{domain.admin_password}\n")
        self.run_cmd(["pam-auth-update", "--enable", "mkhomedir"])
        self.run_cmd(["systemctl", "enable", "--now", "sssd"])
        return APPLIED, f"joined {domain.domain_name} as {domain.admin_user}"

    def _configure_share(self, capability: str, share_dir: Path, dir_mode: int,
                         conf_path: Path, block: str, reload_cmd: list,
                         ports: list) -> tuple:
        if not self.target.enabled(capability):
            return SKIPPED_BY_CONFIG, f"{capability} not requested"

        newly_installed = self._ensure_installed(capability)

        target_dir = self.path(share_dir)
        self._ensure_dir(target_dir)
        if not self.dry_run:
            os.chmod(target_dir, dir_mode)
        self.run_cmd(["chown", SHARE_OWNER, str(target_dir)])

        added = self._append_managed_block(self.path(conf_path),
                                           f"{capability}-share", block)
        if added:
            self.run_cmd(reload_cmd)
        self._allow_ports(ports)

        if newly_installed or added:
            return APPLIED, f"{share_dir} shared via {conf_path}"
        return SKIPPED_ALREADY_SATISFIED, f"{share_dir} already shared via {conf_path}"

    def step_nfs(self) -> tuple:
        return self._configure_share(
            "nfs", NFS_SHARE_DIR, 0o777, EXPORTS_PATH, NFS_EXPORT,
            ["exportfs", "-ra"], NFS_PORTS,
        )

    def step_smb(self) -> tuple:
        return self._configure_share(
            "smb", SMB_SHARE_DIR, 0o2775, SMB_CONF_PATH, SMB_SHARE,
            ["systemctl", "restart", "smbd"], SMB_PORTS,
        )

    def step_git(self) -> tuple:
        if not self.target.enabled("git"):
            return SKIPPED_BY_CONFIG, "git not requested"
        if not self._ensure_installed("git"):
            return SKIPPED_ALREADY_SATISFIED, "git already installed"
        return APPLIED, "git installed"

    def step_webmin(self) -> tuple:
        if not self.target.enabled("webmin"):
            return SKIPPED_BY_CONFIG, "webmin not requested"
        newly_installed = self._ensure_installed("webmin")
        self._allow_ports([WEBMIN_PORT])
        if not newly_installed:
            return SKIPPED_ALREADY_SATISFIED, "webmin already installed"
        return APPLIED, f"webmin installed; UI on {WEBMIN_PORT}"


def _print_outcome(outcome: StepOutcome) -> None:
    msg = f"{STEP_LABELS[outcome.capability]}: {outcome.detail}"
    if outcome.action == APPLIED:
        _info(f"[OK] {msg}")
    elif outcome.action == FAILED:
        _error(f"[FAILED] {msg}")
    else:
        _skip(f"[SKIPPED] {msg}")


# ── Report ───────────────────────────────────────────────────────────────────

REPORT_HEADERS = ("Setting", "Original Value", "New Value", "Result")
REPORT_WIDTHS = (28, 24, 32, 26)

# Report row → ledger step for capability rows.
_CAPABILITY_STEPS = {cap: cap for cap in DISPLAY_ORDER}
_CAPABILITY_STEPS["telemetry_disabled"] = "telemetry"


def report_dir() -> Path:
    """The invoking operator's Desktop, falling back to their home."""
    user = os.environ.get("SUDO_USER") or getpass.getuser()
    try:
        home = Path(pwd.getpwnam(user).pw_dir)
    except KeyError:
        home = Path.home()
    desktop = home / "Desktop"
    return desktop if desktop.is_dir() else home


def render_report(ledger: Ledger, before: SystemFacts, after,
                  target: DesiredState, when: datetime,
                  result: str = "completed") -> str:
    """Render the persisted summary.  Missing values show as sentinels."""
    def action(step):
        outcome = ledger.get(step)
        return outcome.action if outcome else "NOT RUN"

    net = target.network
    snapshot = ledger.get("snapshot")
    snapshot_new = snapshot.detail if snapshot and snapshot.action == APPLIED else "Skipped"

    rows = [
        ("Hostname", before.hostname,
         after.hostname if after else "N/A", action("hostname")),
        ("Filesystem Snapshot", before.snapshot_backend or "N/A",
         snapshot_new, action("snapshot")),
        ("Network Type", before.net_mode, net.mode, action("network")),
        ("IP Address", before.ip_cidr,
         f"{net.ip}/{net.prefix}" if net.is_static else "N/A", action("network")),
        ("Gateway", before.gateway,
         net.gateway if net.is_static else "N/A", action("network")),
        ("DNS Server", before.dns,
         net.dns if net.is_static else "N/A", action("network")),
        ("Package Installation", "N/A",
         f"{len(BASE_PACKAGES)} base + selected", action("packages")),
    ]
    for capability in DISPLAY_ORDER:
        rows.append((CAPABILITY_LABELS[capability],
                     describe_fact(before, capability),
                     describe_fact(after, capability),
                     action(_CAPABILITY_STEPS[capability])))

    resulting_host = after.hostname if after else target.hostname
    lines = [
        "hostprep - Configuration Summary",
        "",
        f"Date: {when:%Y-%m-%d %H:%M:%S}",
        f"Hostname: {resulting_host}",
        f"Result: {result}",
        "",
        "Configuration Changes:",
        "-" * 80,
    ]
    lines += render_table(REPORT_HEADERS, rows, REPORT_WIDTHS)
    lines += ["-" * 80, "", "Step Details:"]
    for outcome in ledger:
        lines.append(f"  {outcome.capability:<14} {outcome.action:<26} {outcome.detail}")
    for step in STEP_ORDER:
        if ledger.get(step) is None:
            lines.append(f"  {step:<14} {'NOT RUN':<26}")
    return "\n".join(lines) + "\n"


def write_report(text: str, directory: Path, when: datetime) -> Path:
    """Write *text* atomically into *directory*, creating it if needed."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{REPORT_PREFIX}_{when:%Y%m%d_%H%M%S}.txt"
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w") as fh:
        fh.write(text)
    tmp.rename(path)
    return path


# ── HostPrep ─────────────────────────────────────────────────────────────────

class HostPrep:
    """Probe, build the target, confirm, reconcile, report."""

    def __init__(self, mode=None, yes: bool = False, dry_run: bool = False,
                 quiet: bool = False, strict_ipv4: bool = False,
                 report_directory=None, inspector=None, root=None):
        self.mode = mode
        self.yes = yes
        self.dry_run = dry_run
        self.quiet = quiet
        self.strict_ipv4 = strict_ipv4
        self.report_directory = report_directory
        self.root = root
        self.inspector = inspector or SystemInspector(root)
        self.os_id, self.os_version = detect_os()
        self.before = None
        self.target = None
        self.after = None
        self.reconciler = None
        self.report_path = None
        self._t0 = None

    def _choose_mode(self) -> str:
        if self.mode:
            return self.mode
        if self.yes:
            return "defaults"
        answer = ask_choice("Use the default configuration or configure each option?",
                            ("default", "manual"), "default")
        return "guided" if answer == "manual" else "defaults"

    # ── entry point ───────────────────────────────────────────────────────

    def run(self) -> int:
        self._t0 = time.monotonic()
        _banner(f"{_I.ROCKET}  hostprep on {self.os_id} {self.os_version}")

        self.before = probe_facts(self.inspector)
        self._print_host_facts()

        try:
            mode = self._choose_mode()
            builder = DesiredStateBuilder(self.before, self.inspector,
                                          strict_ipv4=self.strict_ipv4)
            self.target = builder.guided() if mode == "guided" else builder.defaults()
        except (EOFError, KeyboardInterrupt):
            print()
            _error("Aborted — nothing was changed.")
            sys.exit(EXIT_ABORTED)
        except ValidationError as exc:
            _error(f"Target configuration is invalid: {exc}")
            sys.exit(EXIT_ABORTED)

        confirm_diff(diff_rows(self.before, self.target), self.before.hostname,
                     assume_yes=self.yes)

        _banner(f"{_I.WRENCH}  Applying configuration")
        self.reconciler = Reconciler(
            self.before, self.target, self.inspector,
            dry_run=self.dry_run, quiet=self.quiet, root=self.root,
            strict_ipv4=self.strict_ipv4,
        )
        status, result = EXIT_OK, "completed"
        try:
            self.reconciler.run()
        except FatalStepError as exc:
            _error(f"{STEP_LABELS[exc.outcome.capability]} failed and later steps "
                   "depend on it — stopping")
            status = EXIT_FATAL
            result = f"stopped after {exc.outcome.capability} failed"
        else:
            if self.reconciler.ledger.failed():
                result = "completed with failures"

        self._cleanup()
        self.after = probe_facts(self.inspector)
        self._write_report(result)
        self._print_summary()
        self._reboot_prompt()
        return status

    # ── phases ────────────────────────────────────────────────────────────

    def _print_host_facts(self) -> None:
        b = self.before
        _info(f"{_I.LINUX}  Kernel:       {os.uname().release}")
        _info(f"{_I.STAMP}  Hostname:     {b.hostname}")
        _info(f"{_I.GLOBE}  Address:      {b.ip_cidr} on {b.interface} ({b.net_mode})")
        _info(f"{_I.GLOBE}  Gateway/DNS:  {b.gateway} / {b.dns}")
        _info(f"{_I.UNDO}  Snapshots:    {b.snapshot_backend or 'none available'}")

    def _cleanup(self) -> None:
        _info(f"{_I.PACKAGE}  Removing unused packages")
        try:
            self.reconciler.run_cmd(["apt-get", "autoremove", "-y"],
                                    check=False, env=APT_ENV)
        except OSError as exc:
            _warn(f"Cleanup skipped: {exc}")

    def _write_report(self, result: str) -> None:
        when = datetime.now()
        text = render_report(self.reconciler.ledger, self.before, self.after,
                             self.target, when, result=result)
        directory = Path(self.report_directory) if self.report_directory else report_dir()
        if self.dry_run:
            _dry(f"write report to {directory}")
            print(text)
            return
        try:
            self.report_path = write_report(text, directory, when)
        except OSError as exc:
            _error(f"Could not write report to {directory}: {exc}")
            print(text)
            return
        _info(f"{_I.STAMP}  Summary saved to {self.report_path}")

    def _print_summary(self) -> None:
        elapsed = time.monotonic() - self._t0
        m, s = divmod(int(elapsed), 60)
        _banner(f"{_I.CHECK}  hostprep complete ({m}m {s:02d}s)")
        for outcome in self.reconciler.ledger:
            _print_outcome(outcome)

    def _reboot_prompt(self) -> None:
        if self.yes or self.dry_run:
            _skip("Reboot skipped — reboot manually for all changes to take effect")
            return
        try:
            reboot = ask_yes_no("Configuration is complete. Reboot now?", True)
        except (EOFError, KeyboardInterrupt):
            print()
            reboot = False
        if reboot:
            _info("Rebooting now to apply all changes")
            self.reconciler.run_cmd(["systemctl", "reboot"], check=False)
        else:
            _skip("Reboot skipped — reboot manually for all changes to take effect")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="hostprep",
        description="Reconcile a fresh Ubuntu server to a hardened baseline.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  sudo hostprep                      # choose defaults or guided setup interactively
  sudo hostprep --defaults           # built-in baseline, confirm the diff
  sudo hostprep --guided             # walk through every setting
  sudo hostprep --defaults -y        # unattended: no confirmation, no reboot prompt
  hostprep --dry-run --defaults      # preview commands and files without changes
""",
    )
    mode = p.add_mutually_exclusive_group()
    mode.add_argument(
        "--defaults", dest="mode", action="store_const", const="defaults",
        help="use the built-in baseline without per-setting prompts",
    )
    mode.add_argument(
        "--guided", dest="mode", action="store_const", const="guided",
        help="prompt for every setting",
    )
    p.add_argument(
        "-y", "--yes", action="store_true",
        help="skip the confirmation and reboot prompts (implies --defaults "
             "unless --guided is given)",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-command and per-file output",
    )
    p.add_argument(
        "--dry-run", action="store_true",
        help="print commands and file changes without executing them",
    )
    p.add_argument(
        "--strict-ipv4", action="store_true",
        help="also reject IPv4 octets outside 0-255",
    )
    p.add_argument(
        "--report-dir", type=Path, default=None,
        help="directory for the summary report (default: operator's Desktop or home)",
    )
    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if os.geteuid() != 0 and not args.dry_run:
        _error("hostprep must run as root (try: sudo hostprep)")
        sys.exit(EXIT_ABORTED)

    app = HostPrep(
        mode=args.mode,
        yes=args.yes,
        dry_run=args.dry_run,
        quiet=args.quiet,
        strict_ipv4=args.strict_ipv4,
        report_directory=args.report_dir,
    )
    sys.exit(app.run())


if __name__ == "__main__":
    main()
