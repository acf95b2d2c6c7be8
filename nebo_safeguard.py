#!/usr/bin/env python3
# Dependencies: bashlex
# Install with: pip install bashlex

"""
Nebo Safeguard - Hard safety limits for the agent's file and shell tools
Refuses writes to protected system paths and catastrophic shell commands,
regardless of policy level, autonomous mode, or user approval
"""

import json
import ntpath
import os
import posixpath
import re
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, List, Mapping, Optional, Tuple

import bashlex


# ============================================================================
# Data Models
# ============================================================================

@dataclass(frozen=True)
class Denial:
    """Refusal returned by a guard"""
    action: str
    target: str
    reason: str
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class ToolResult:
    """Outcome of a guarded tool call"""
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class ProtectedPathRule:
    """Directory prefix that must never be written, deleted or chmod'ed"""
    prefix: str
    reason: str


@dataclass(frozen=True)
class SensitiveUserRule:
    """Credential path, relative to the user's home directory"""
    relative_path: str
    reason: str


@dataclass
class CommandContext:
    """Command under inspection by the destructive pattern catalog"""
    original_command: str
    lowered_command: str
    paths: 'PathClassifier'


# ============================================================================
# Denial Messages
# ============================================================================

HARD_LIMIT = "This is a hard safety limit that cannot be overridden"

FILE_DENIAL = (
    'BLOCKED: cannot {action} "{path}" — {reason}. ' + HARD_LIMIT + '. '
    'If you need to modify system files, do it manually in a terminal'
)

SUDO_DENIAL = (
    "BLOCKED: sudo is not permitted. "
    "Nebo must never run commands with elevated privileges. " + HARD_LIMIT + ". "
    "If you need root access, run the command manually in a terminal"
)

SU_DENIAL = (
    "BLOCKED: su is not permitted. "
    "Nebo must never run commands as another user. " + HARD_LIMIT
)

DESTRUCTIVE_DENIAL = (
    "BLOCKED: {reason}. " + HARD_LIMIT + ". "
    "If you need to perform this operation, do it manually in a terminal"
)


# ============================================================================
# Platform Rules
# ============================================================================

DATA_DIR_ENV = 'NEBO_DATA_DIR'

ROOT_REASON = "this is the root filesystem"
DATA_DIR_REASON = "Nebo database directory — deleting this would destroy all agent data"

SENSITIVE_USER_RULES = (
    SensitiveUserRule('.ssh', "SSH keys and configuration"),
    SensitiveUserRule('.gnupg', "GPG keys and configuration"),
    SensitiveUserRule('.aws/credentials', "AWS credentials"),
    SensitiveUserRule('.aws/config', "AWS configuration"),
    SensitiveUserRule('.kube/config', "Kubernetes credentials"),
    SensitiveUserRule('.docker/config.json', "Docker registry credentials"),
)


def home_dir() -> Optional[str]:
    """Current user's home directory, or None if it cannot be determined"""
    try:
        return str(Path.home())
    except (RuntimeError, KeyError):
        return None


class PlatformRules(ABC):
    """Protected path rules for one operating system"""

    name = ''
    pathmod: Any = posixpath
    case_sensitive = True
    system_rules: Tuple[ProtectedPathRule, ...] = ()

    def clean(self, path: str) -> str:
        """Canonicalize a path lexically"""
        cleaned = posixpath.normpath(path)
        # POSIX normpath keeps a leading '//'
        if cleaned.startswith('//'):
            cleaned = '/' + cleaned.lstrip('/')
        return cleaned

    def is_root(self, path: str) -> bool:
        return path == '/'

    def matches(self, path: str, prefix: str) -> bool:
        """Exact match or descendant of prefix"""
        if not self.case_sensitive:
            path, prefix = path.lower(), prefix.lower()
        return path == prefix or path.startswith(prefix + self.pathmod.sep)

    @abstractmethod
    def default_data_root(self, home: Optional[str]) -> Optional[str]:
        """Platform-standard Nebo data root, used when NEBO_DATA_DIR is unset"""
        pass


class DarwinRules(PlatformRules):
    name = 'darwin'
    system_rules = (
        ProtectedPathRule('/System', "macOS system files (SIP-protected)"),
        ProtectedPathRule('/usr/bin', "system binaries"),
        ProtectedPathRule('/usr/sbin', "system admin binaries"),
        ProtectedPathRule('/usr/lib', "system libraries"),
        ProtectedPathRule('/usr/libexec', "system executables"),
        ProtectedPathRule('/usr/share', "system shared data"),
        ProtectedPathRule('/bin', "core system binaries"),
        ProtectedPathRule('/sbin', "core system admin binaries"),
        ProtectedPathRule('/private/var/db', "macOS system databases"),
        ProtectedPathRule('/Library/LaunchDaemons', "system launch daemons"),
        ProtectedPathRule('/Library/LaunchAgents', "system launch agents"),
        ProtectedPathRule('/etc', "system configuration"),
        # /etc is an alias for /private/etc
        ProtectedPathRule('/private/etc', "system configuration"),
    )

    def default_data_root(self, home: Optional[str]) -> Optional[str]:
        if not home:
            return None
        return posixpath.join(home, 'Library', 'Application Support', 'Nebo')


class LinuxRules(PlatformRules):
    name = 'linux'
    system_rules = (
        ProtectedPathRule('/bin', "core system binaries"),
        ProtectedPathRule('/sbin', "core system admin binaries"),
        ProtectedPathRule('/usr/bin', "system binaries"),
        ProtectedPathRule('/usr/sbin', "system admin binaries"),
        ProtectedPathRule('/usr/lib', "system libraries"),
        ProtectedPathRule('/usr/libexec', "system executables"),
        ProtectedPathRule('/usr/share', "system shared data"),
        ProtectedPathRule('/boot', "boot loader and kernel"),
        ProtectedPathRule('/etc', "system configuration"),
        ProtectedPathRule('/proc', "kernel process filesystem"),
        ProtectedPathRule('/sys', "kernel sysfs"),
        ProtectedPathRule('/dev', "device files"),
        ProtectedPathRule('/root', "root user home directory"),
        ProtectedPathRule('/var/lib/dpkg', "package manager database"),
        ProtectedPathRule('/var/lib/rpm', "package manager database"),
        ProtectedPathRule('/var/lib/apt', "package manager cache"),
    )

    def default_data_root(self, home: Optional[str]) -> Optional[str]:
        config_home = os.environ.get('XDG_CONFIG_HOME', '')
        if not posixpath.isabs(config_home):
            if not home:
                return None
            config_home = posixpath.join(home, '.config')
        return posixpath.join(config_home, 'nebo')


class WindowsRules(PlatformRules):
    name = 'windows'
    pathmod = ntpath
    case_sensitive = False
    system_rules = (
        ProtectedPathRule('C:\\Windows', "Windows system directory"),
        ProtectedPathRule('C:\\Program Files', "installed program files"),
        ProtectedPathRule('C:\\Program Files (x86)', "installed program files (32-bit)"),
        ProtectedPathRule('C:\\ProgramData', "system program data"),
        ProtectedPathRule('C:\\Recovery', "Windows recovery partition"),
        ProtectedPathRule('C:\\$Recycle.Bin', "recycle bin system folder"),
    )

    def clean(self, path: str) -> str:
        return ntpath.normpath(path)

    def is_root(self, path: str) -> bool:
        drive, rest = ntpath.splitdrive(path)
        return bool(drive) and rest in ('', '\\')

    def default_data_root(self, home: Optional[str]) -> Optional[str]:
        app_data = os.environ.get('APPDATA')
        if not app_data:
            return None
        return ntpath.join(app_data, 'Nebo')


PLATFORM_RULES = MappingProxyType({
    'darwin': DarwinRules,
    'linux': LinuxRules,
    'win32': WindowsRules,
})


def rules_for_platform(platform: str) -> PlatformRules:
    """Pick the rule table for a sys.platform value; unknown systems get Linux rules"""
    key = 'linux' if platform.startswith('linux') else platform
    return PLATFORM_RULES.get(key, LinuxRules)()


def data_root(rules: Optional[PlatformRules] = None) -> Optional[str]:
    """Root of Nebo's persisted state, honoring NEBO_DATA_DIR"""
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return override
    rules = rules or rules_for_platform(sys.platform)
    return rules.default_data_root(home_dir())


# ============================================================================
# Path Classifier
# ============================================================================

class PathClassifier:
    """Decides whether an absolute path falls inside a protected region

    Home directory and data directory are looked up on every call so that
    changes to the environment take effect immediately.
    """

    def __init__(self, rules: Optional[PlatformRules] = None):
        self.rules = rules or rules_for_platform(sys.platform)

    def classify(self, abs_path: str) -> Optional[str]:
        """Return why the path is protected, or None if it is not"""
        rules = self.rules
        path = rules.clean(abs_path)

        if rules.is_root(path):
            return ROOT_REASON

        for rule in rules.system_rules:
            if rules.matches(path, rule.prefix):
                return rule.reason

        return self._classify_user_path(path)

    def agent_data_dir(self) -> Optional[str]:
        """Directory holding Nebo's database and other critical data"""
        root = data_root(self.rules)
        if not root:
            return None
        return self.rules.clean(self.rules.pathmod.join(root, 'data'))

    def _classify_user_path(self, path: str) -> Optional[str]:
        rules = self.rules

        # Deleting or overwriting our own database is self-destruction
        data_dir = self.agent_data_dir()
        if data_dir and rules.matches(path, data_dir):
            return DATA_DIR_REASON

        home = home_dir()
        if not home:
            return None

        for rule in SENSITIVE_USER_RULES:
            protected = rules.pathmod.join(home, *rule.relative_path.split('/'))
            if rules.matches(path, rules.clean(protected)):
                return rule.reason

        return None


def absolute_path(path: str) -> Optional[str]:
    """Expand ~ and make a path absolute against the working directory"""
    try:
        return os.path.abspath(os.path.expanduser(path))
    except (OSError, ValueError):
        return None


def resolve_symlinks(path: str) -> Optional[str]:
    try:
        return os.path.realpath(path)
    except (OSError, ValueError):
        return None


# ============================================================================
# Destructive Pattern Catalog
# ============================================================================

@dataclass(frozen=True)
class DestructivePattern:
    """Catalog entry; the matcher returns a reason when the command is forbidden"""
    name: str
    matcher: Callable[[CommandContext], Optional[str]]
    template: str = DESTRUCTIVE_DENIAL

    def message(self, reason: str) -> str:
        return self.template.format(reason=reason)


def _when(predicate: Callable[[CommandContext], bool], reason: str) -> Callable[[CommandContext], Optional[str]]:
    """Matcher with a fixed reason"""
    def matcher(context: CommandContext) -> Optional[str]:
        return reason if predicate(context) else None
    return matcher


COMMAND_SEPARATORS = ('|', '&&', ';')


def _after_separator(lowered: str, word: str) -> bool:
    """True if word follows a pipe, && / || or ; with or without a space"""
    return any(sep + gap + word in lowered
               for sep in COMMAND_SEPARATORS
               for gap in ('', ' '))


def _has_sudo(context: CommandContext) -> bool:
    cmd = context.lowered_command
    if cmd.startswith(('sudo ', 'sudo\t')):
        return True
    if _after_separator(cmd, 'sudo '):
        return True
    return '$(sudo ' in cmd or '`sudo ' in cmd


def _has_su(context: CommandContext) -> bool:
    # Requires a space after the token so summary/suspend/submodule pass
    cmd = context.lowered_command
    if cmd == 'su' or cmd.startswith(('su ', 'su\t')):
        return True
    return _after_separator(cmd, 'su ')


ROOT_WIPE = re.compile(r'rm -(?:rf|fr) (?:--no-preserve-root )?/(?:\*|(?=[\s;&]|$))')


def _is_root_wipe(context: CommandContext) -> bool:
    return ROOT_WIPE.search(context.lowered_command) is not None


def _is_dd_to_device(context: CommandContext) -> bool:
    cmd = context.lowered_command
    return 'dd ' in cmd and ('of=/dev/' in cmd or 'of= /dev/' in cmd)


DISK_COMMANDS = (
    ('mkfs', "cannot format filesystems — this would destroy all data on the target device"),
    ('fdisk', "cannot modify disk partition tables — this could destroy all data on the drive"),
    ('gdisk', "cannot modify GPT partition tables — this could destroy all data on the drive"),
    ('parted', "cannot modify disk partitions — this could destroy all data on the drive"),
    ('sfdisk', "cannot modify disk partition tables — this could destroy all data on the drive"),
    ('cfdisk', "cannot modify disk partition tables — this could destroy all data on the drive"),
    ('wipefs', "cannot wipe filesystem signatures — this could make drives unreadable"),
    ('sgdisk', "cannot modify GPT partition tables — this could destroy all data on the drive"),
    ('partprobe', "cannot probe partition changes — this is a disk management operation"),
    ('diskutil erasedisk', "cannot erase disks — this would destroy all data on the drive"),
    ('diskutil erasevolume', "cannot erase volumes — this would destroy all data on the volume"),
    ('diskutil partitiondisk', "cannot partition disks — this could destroy all data on the drive"),
    ('diskutil apfs deletecontainer', "cannot delete APFS containers — this would destroy data"),
    ('format', "cannot format drives — this would destroy all data on the target"),
)


def _runs_disk_command(name: str) -> Callable[[CommandContext], bool]:
    def predicate(context: CommandContext) -> bool:
        cmd = context.lowered_command
        return cmd.startswith(name) or (' ' + name) in cmd
    return predicate


FORK_BOMB = ':(){ :|:& };:'

SAFE_DEVICES = frozenset({'/dev/null', '/dev/stdout', '/dev/stderr'})
DEVICE_REDIRECT = re.compile(r'> ?(/dev/[^\s;&|<>()"\'`]*)')


def _writes_device(context: CommandContext) -> bool:
    targets = DEVICE_REDIRECT.findall(context.lowered_command)
    return any(target not in SAFE_DEVICES for target in targets)


def _check_targets(context: CommandContext, tokens: List[str], verb: str,
                   skip_specifiers: bool) -> Optional[str]:
    """Classify each non-flag argument as a path"""
    for token in tokens:
        if token.startswith('-'):
            continue
        # Mode or owner argument such as 755, u+x or root:root
        if skip_specifiers and len(token) <= 5 and '/' not in token:
            continue

        abs_path = absolute_path(token)
        if abs_path is None:
            continue

        reason = context.paths.classify(abs_path)
        if reason:
            return f'{verb} "{token}" — {reason}'
    return None


def _rm_targets(context: CommandContext) -> Optional[str]:
    cmd = context.lowered_command
    if 'rm ' not in cmd and not cmd.startswith('rm\t'):
        return None
    tokens = context.original_command.split()
    return _check_targets(context, tokens[1:], 'cannot delete', skip_specifiers=False)


def _permission_targets(context: CommandContext) -> Optional[str]:
    if not context.lowered_command.startswith(('chmod ', 'chown ')):
        return None
    tokens = context.original_command.split()
    return _check_targets(context, tokens[1:], 'cannot modify permissions on', skip_specifiers=True)


PATH_TARGETING_COMMANDS = ('rm', 'chmod', 'chown')


def _collect_commands(nodes: Any, found: List[List[str]]):
    """Collect the words of every simple command in a bashlex tree"""
    if isinstance(nodes, list):
        for node in nodes:
            _collect_commands(node, found)
        return
    if not hasattr(nodes, 'kind'):
        return

    if nodes.kind == 'command' and getattr(nodes, 'parts', None):
        words = [part.word for part in nodes.parts if part.kind == 'word']
        if words:
            found.append(words)

    for attr in ('parts', 'list', 'command'):
        child = getattr(nodes, attr, None)
        if child is not None:
            _collect_commands(child, found)


def simple_commands(command: str) -> List[List[str]]:
    """De-quoted words of each simple command, or [] if bashlex cannot parse it"""
    try:
        trees = bashlex.parse(command)
    except Exception:
        return []

    found: List[List[str]] = []
    _collect_commands(trees, found)
    return found


def _parsed_targets(context: CommandContext) -> Optional[str]:
    """Second pass over rm/chmod/chown with quotes removed and chains split"""
    if not any(name in context.lowered_command for name in PATH_TARGETING_COMMANDS):
        return None

    for words in simple_commands(context.original_command):
        name = posixpath.basename(words[0])
        if name == 'rm':
            reason = _check_targets(context, words[1:], 'cannot delete', skip_specifiers=False)
        elif name in ('chmod', 'chown'):
            reason = _check_targets(context, words[1:], 'cannot modify permissions on', skip_specifiers=True)
        else:
            continue
        if reason:
            return reason
    return None


# Evaluated in order, first match wins. Append new entries; do not reorder.
DESTRUCTIVE_PATTERNS: Tuple[DestructivePattern, ...] = (
    DestructivePattern('sudo', _when(_has_sudo, "sudo is not permitted"), SUDO_DENIAL),
    DestructivePattern('su', _when(_has_su, "su is not permitted"), SU_DENIAL),
    DestructivePattern('root-wipe', _when(
        _is_root_wipe, "cannot delete root filesystem — this would destroy the operating system")),
    DestructivePattern('dd', _when(
        _is_dd_to_device, "cannot write to block devices with dd — this could destroy disk data")),
) + tuple(
    DestructivePattern('disk:' + name, _when(_runs_disk_command(name), reason))
    for name, reason in DISK_COMMANDS
) + (
    DestructivePattern('fork-bomb', _when(
        lambda context: FORK_BOMB in context.original_command,
        "fork bomb detected — this would crash the system")),
    DestructivePattern('device-write', _when(
        _writes_device, "cannot write to device files — this could damage hardware or corrupt data")),
    DestructivePattern('rm-targets', _rm_targets),
    DestructivePattern('permission-targets', _permission_targets),
    DestructivePattern('parsed-targets', _parsed_targets),
)


# ============================================================================
# Command Classifier
# ============================================================================

class CommandClassifier:
    """Matches a shell command against the destructive pattern catalog"""

    def __init__(self, paths: Optional[PathClassifier] = None,
                 patterns: Tuple[DestructivePattern, ...] = DESTRUCTIVE_PATTERNS):
        self.paths = paths or PathClassifier()
        self.patterns = patterns

    def classify(self, command: str) -> Optional[Tuple[str, str]]:
        """Return (reason, denial message) for a forbidden command, else None"""
        cmd = command.strip()
        context = CommandContext(
            original_command=cmd,
            lowered_command=cmd.lower(),
            paths=self.paths,
        )

        for pattern in self.patterns:
            reason = pattern.matcher(context)
            if reason:
                return reason, pattern.message(reason)

        return None


# ============================================================================
# Tool Guards
# ============================================================================

def string_fields(payload: Mapping[str, Any], *keys: str) -> Optional[Tuple[str, ...]]:
    """Read string fields; missing ones are '', a wrong type gives None"""
    values = []
    for key in keys:
        value = payload.get(key, '')
        if value is None:
            value = ''
        if not isinstance(value, str):
            return None
        values.append(value)
    return tuple(values)


class ToolGuard(ABC):
    """Base class for per-tool guards"""

    @abstractmethod
    def check(self, payload: Mapping[str, Any]) -> Optional[Denial]:
        """Return a Denial if the call must not run"""
        pass


class FileGuard(ToolGuard):
    """Blocks write/edit of protected paths, including through symlinks"""

    MUTATING_ACTIONS = frozenset({'write', 'edit'})

    def __init__(self, paths: PathClassifier):
        self.paths = paths

    def check(self, payload: Mapping[str, Any]) -> Optional[Denial]:
        fields = string_fields(payload, 'action', 'path')
        if fields is None:
            return None
        action, path = fields

        # read, glob, grep and list are never blocked
        if action not in self.MUTATING_ACTIONS or not path:
            return None

        abs_path = absolute_path(path)
        if abs_path is None:
            return None

        reason = self.paths.classify(abs_path)
        if reason is None:
            resolved = resolve_symlinks(abs_path)
            if resolved and resolved != abs_path:
                reason = self.paths.classify(resolved)

        if reason is None:
            return None

        return Denial(
            action=action,
            target=path,
            reason=reason,
            message=FILE_DENIAL.format(action=action, path=path, reason=reason),
        )


class ShellGuard(ToolGuard):
    """Blocks privilege escalation and catastrophic commands"""

    RESOURCE = 'bash'
    EXEC_ACTION = 'exec'

    def __init__(self, commands: CommandClassifier):
        self.commands = commands

    def check(self, payload: Mapping[str, Any]) -> Optional[Denial]:
        fields = string_fields(payload, 'resource', 'action', 'command')
        if fields is None:
            return None
        resource, action, command = fields

        if resource not in (self.RESOURCE, ''):
            return None
        if action != self.EXEC_ACTION or not command:
            return None

        verdict = self.commands.classify(command)
        if verdict is None:
            return None

        reason, message = verdict
        return Denial(action=action, target=command, reason=reason, message=message)


# ============================================================================
# Guard Dispatcher
# ============================================================================

def default_guards(rules: Optional[PlatformRules] = None) -> Mapping[str, ToolGuard]:
    """Guard table for the file and shell tools"""
    paths = PathClassifier(rules)
    return MappingProxyType({
        'file': FileGuard(paths),
        'shell': ShellGuard(CommandClassifier(paths)),
    })


def decode_payload(payload: Any) -> Optional[Mapping[str, Any]]:
    """Tool input as a mapping, or None if it cannot be read"""
    if isinstance(payload, (str, bytes, bytearray)):
        try:
            payload = json.loads(payload)
        except (ValueError, RecursionError):
            return None
    if isinstance(payload, Mapping):
        return payload
    return None


class Safeguard:
    """Single entry point called before every tool execution

    Tools without an entry in the guard table pass through untouched.
    """

    def __init__(self, guards: Optional[Mapping[str, ToolGuard]] = None):
        if guards is None:
            guards = default_guards()
        self.guards = MappingProxyType(dict(guards))

    def check(self, tool_name: Any, payload: Any) -> Optional[Denial]:
        """Return a Denial if the tool call must not run, else None"""
        if not isinstance(tool_name, str):
            return None
        guard = self.guards.get(tool_name)
        if guard is None:
            return None

        data = decode_payload(payload)
        if data is None:
            # Unparseable input is left to the tool's own validation
            return None

        return guard.check(data)

    def execute(self, tool_name: str, payload: Any, run: Callable[[Any], Any]) -> ToolResult:
        """Run a tool only if the safeguard allows it"""
        denial = self.check(tool_name, payload)
        if denial is not None:
            return ToolResult(content=denial.message, is_error=True)

        result = run(payload)
        if isinstance(result, ToolResult):
            return result
        return ToolResult(content=str(result))


DEFAULT_SAFEGUARD = Safeguard()


def check_safeguard(tool_name: Any, payload: Any) -> Optional[Denial]:
    """Check a tool call against the hard safety limits of this host"""
    return DEFAULT_SAFEGUARD.check(tool_name, payload)
