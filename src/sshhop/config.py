"""
SSH config file keyword source matching OpenSSH behaviour.

Provides:
- SSHConfig: pattern-matched keyword lookup over ~/.ssh/config and
  /etc/ssh/ssh_config
- expand_tokens: %-token expansion for HostName and IdentityFile values

Values are returned as raw strings; surrounding quotes are left for the
caller to strip. A keyword that is absent resolves to the OpenSSH default
where one exists, otherwise the empty string.

A malformed file does not abort loading. The first problem found is
recorded and raised from every subsequent lookup, so resolution of any
host against a broken config fails loudly instead of silently ignoring
half a file.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from sshhop.errors import SSHConfigError
from sshhop.platform import get_config_path, get_system_config_path, local_username

log = logging.getLogger(__name__)


# OpenSSH client defaults for the keywords the resolver reads
DEFAULTS: dict[str, str] = {
    "port": "22",
    "batchmode": "no",
    "pubkeyauthentication": "yes",
    "passwordauthentication": "yes",
    "kbdinteractiveauthentication": "yes",
    "preferredauthentications": (
        "gssapi-with-mic,hostbased,publickey,keyboard-interactive,password"
    ),
    "addkeystoagent": "no",
    "userknownhostsfile": "~/.ssh/known_hosts ~/.ssh/known_hosts2",
    "globalknownhostsfile": "/etc/ssh/ssh_known_hosts /etc/ssh/ssh_known_hosts2",
}

DEFAULT_IDENTITY_FILES: tuple[str, ...] = (
    "~/.ssh/id_rsa",
    "~/.ssh/id_ecdsa",
    "~/.ssh/id_ecdsa_sk",
    "~/.ssh/id_ed25519",
    "~/.ssh/id_ed25519_sk",
    "~/.ssh/id_dsa",
)

# yes/no keywords validated at parse time
BOOLEAN_OPTIONS = frozenset({
    "batchmode",
    "pubkeyauthentication",
    "passwordauthentication",
    "kbdinteractiveauthentication",
    "identitiesonly",
    "forwardagent",
})

# Case-insensitive option name mapping to canonical form
OPTION_ALIASES: dict[str, str] = {
    "challengeresponseauthentication": "kbdinteractiveauthentication",
    "pubkeyacceptedkeytypes": "pubkeyacceptedalgorithms",
}

# Keyword, then whitespace and/or a single "=", then the value
_KEYWORD_RE = re.compile(r"(\S+?)(?:\s*=\s*|\s+)(.*)$")


@dataclass
class _HostBlock:
    """Internal representation of a Host block in config."""
    patterns: list[str]
    options: dict[str, list[str]] = field(default_factory=dict)
    is_match: bool = False


def expand_tokens(
    value: str,
    host: str,
    user: str | None = None,
    port: int = 22,
    original_host: str | None = None,
) -> str:
    """Expand SSH config tokens in a value.

    Tokens:
    - %h: target hostname
    - %p: port
    - %r: remote username
    - %u: local username
    - %n: original hostname as given on the command line
    - %%: literal %
    """
    local_user = local_username()
    if user is None:
        user = local_user
    if original_host is None:
        original_host = host

    result = value.replace("%%", "\x00")
    result = result.replace("%h", host)
    result = result.replace("%p", str(port))
    result = result.replace("%n", original_host)
    result = result.replace("%r", user)
    result = result.replace("%u", local_user)
    return result.replace("\x00", "%")


def match_pattern(name: str, pattern: str) -> bool:
    """
    Match a name against an OpenSSH wildcard pattern, ignoring case.

    Only `*` and `?` are special; brackets and every other character
    match literally, so `[host]:2222` names exactly that host and port.
    """
    regex = re.escape(pattern.lower()).replace(r"\*", ".*").replace(r"\?", ".")
    return re.fullmatch(regex, name.lower(), re.DOTALL) is not None


def unquote(value: str) -> str:
    """Strip one pair of surrounding double quotes from a config value."""
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


class SSHConfig:
    """
    Keyword source for SSH config files.

    Matches OpenSSH behaviour:
    - Reads user config (~/.ssh/config) then system config (/etc/ssh/ssh_config)
    - Options before a file's first Host line apply to every host, in that
      file's position (an earlier file's Host block still wins over them)
    - First match wins for single-value options
    - Host patterns support *, ? and ! negation

    Files are read once on construction. reload() re-reads the same files
    and is safe to call repeatedly.

    Usage:
        config = SSHConfig()
        config.get("myserver", "Port")          # "22" unless configured
        config.get_all("myserver", "IdentityFile")
    """

    def __init__(
        self,
        config_files: list[Path | str] | None = None,
        load_system_config: bool = True,
    ) -> None:
        if config_files is not None:
            self._paths = [Path(p) for p in config_files]
        else:
            self._paths = [get_config_path()]
            if load_system_config:
                self._paths.append(get_system_config_path())

        self._host_blocks: list[_HostBlock] = []
        self._error: tuple[str, str | None, int] | None = None
        self._literal: str | None = None
        self.reload()

    @property
    def paths(self) -> list[Path]:
        return list(self._paths)

    def reload(self) -> None:
        """Discard parsed state and re-read every config file."""
        self._host_blocks = []
        self._error = None
        for path in self._paths:
            self._load_file(path)
        if self._literal is not None:
            self._parse(self._literal, None)

    @classmethod
    def from_string(cls, content: str) -> "SSHConfig":
        """Build a config from literal text (no files are read)."""
        config = cls(config_files=[])
        config._literal = content
        config.reload()
        return config

    def _load_file(self, config_path: Path) -> None:
        if not config_path.exists():
            return
        try:
            with open(config_path, "r", encoding="utf-8", errors="replace") as f:
                content = f.read()
        except OSError as e:
            log.warning("Skipping unreadable ssh config %s: %s", config_path, e)
            return
        self._parse(content, config_path)

    def _record_error(
        self, message: str, source_path: Path | None, line_no: int,
    ) -> None:
        where = f"{source_path}:{line_no}" if source_path else f"line {line_no}"
        log.debug("ssh config error at %s: %s", where, message)
        if self._error is None:
            self._error = (
                f"{where}: {message}",
                str(source_path) if source_path else None,
                line_no,
            )

    def _parse(self, content: str, source_path: Path | None = None) -> None:
        """Parse SSH config content."""
        current_block: _HostBlock | None = None

        for line_no, line in enumerate(content.splitlines(), 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            # Inline comments need a preceding space
            comment_idx = line.find(" #")
            if comment_idx >= 0:
                line = line[:comment_idx].rstrip()

            # "Option Value", "Option=Value" and "Option = Value" forms
            match = _KEYWORD_RE.match(line)
            if match:
                option, value = match.groups()
            else:
                option, value = line, ""

            option = option.lower()
            value = value.strip()

            if not value:
                self._record_error(
                    f"keyword {option!r} is missing an argument", source_path, line_no,
                )
                continue
            if value.count('"') % 2:
                self._record_error(
                    f"unterminated quote in {option!r}", source_path, line_no,
                )
                continue

            if option == "host":
                if current_block:
                    self._host_blocks.append(current_block)
                current_block = _HostBlock(patterns=self._parse_patterns(value))
                continue
            if option == "match":
                # Match criteria are not evaluated; its options never apply
                if current_block:
                    self._host_blocks.append(current_block)
                current_block = _HostBlock(patterns=[], is_match=True)
                continue

            canonical = OPTION_ALIASES.get(option, option)
            problem = self._validate(canonical, value)
            if problem:
                self._record_error(problem, source_path, line_no)
                continue

            if current_block is None:
                # Leading options form an implicit "Host *" block for this file
                current_block = _HostBlock(patterns=["*"])
            self._set_option(current_block.options, canonical, value)

        if current_block:
            self._host_blocks.append(current_block)

    @staticmethod
    def _validate(option: str, value: str) -> str | None:
        raw = unquote(value)
        if option == "port":
            if not raw.isdigit() or not 1 <= int(raw) <= 65535:
                return f"bad port {raw!r}"
        elif option in BOOLEAN_OPTIONS:
            if raw.lower() not in ("yes", "no"):
                return f"{option} must be 'yes' or 'no', got {raw!r}"
        return None

    @staticmethod
    def _parse_patterns(value: str) -> list[str]:
        """Parse Host pattern value into list of patterns."""
        patterns = []
        in_quotes = False
        current: list[str] = []

        for char in value:
            if char == '"':
                in_quotes = not in_quotes
            elif char in (" ", "\t") and not in_quotes:
                if current:
                    patterns.append("".join(current))
                    current = []
            else:
                current.append(char)

        if current:
            patterns.append("".join(current))
        return patterns

    @staticmethod
    def _set_option(options: dict[str, list[str]], name: str, value: str) -> None:
        options.setdefault(name, []).append(value)

    @staticmethod
    def _matches_host_block(host: str, patterns: list[str]) -> bool:
        """Check if host matches a Host block's patterns.

        A host must match at least one positive pattern and no negated one.
        """
        matched_positive = False

        for pattern in patterns:
            if pattern.startswith("!"):
                if match_pattern(host, pattern[1:]):
                    return False
            elif match_pattern(host, pattern):
                matched_positive = True

        return matched_positive

    def _check(self) -> None:
        if self._error is not None:
            message, path, line_no = self._error
            raise SSHConfigError(message, path=path, line_number=line_no)

    def _values(self, host: str, keyword: str) -> list[str]:
        keyword = keyword.lower()
        keyword = OPTION_ALIASES.get(keyword, keyword)
        values: list[str] = []
        for block in self._host_blocks:
            if block.is_match:
                continue
            if self._matches_host_block(host, block.patterns):
                values.extend(block.options.get(keyword, []))
        return values

    def get(self, host: str, keyword: str) -> str:
        """
        Return the first matching value of a keyword for a host.

        Raises:
            SSHConfigError: If any loaded config file is malformed
        """
        self._check()
        values = self._values(host, keyword)
        if values:
            return values[0]
        return DEFAULTS.get(keyword.lower(), "")

    def get_all(self, host: str, keyword: str) -> list[str]:
        """
        Return every matching value of a keyword for a host, in file order.

        Raises:
            SSHConfigError: If any loaded config file is malformed
        """
        self._check()
        values = self._values(host, keyword)
        if values:
            return values
        keyword = keyword.lower()
        if keyword == "identityfile":
            return list(DEFAULT_IDENTITY_FILES)
        if keyword in DEFAULTS:
            return [DEFAULTS[keyword]]
        return []
