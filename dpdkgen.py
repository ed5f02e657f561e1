"""DPDK build driver and Rust FFI bindings generator.

Fetches, configures, builds and installs a pinned DPDK release under deps/,
then generates symbol-restricted bindgen modules described by dpdk.map and
prints the Cargo link directives for the installed static libraries.

Usage:
    python dpdkgen.py --module eal=eal,lcore,mbuf --module power=power
    FORCE=yes python dpdkgen.py
    python dpdkgen.py --list-descriptors --filter eth
"""

import argparse
import hashlib
import os
import re
import shutil
import subprocess
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple, NoReturn

DRIVER_PATH = Path(__file__).resolve()

DPDK_VERSION = "23.11.1"
MESON_VERSION = "0.53.2"
DOWNLOAD_URL = f"https://fast.dpdk.org/rel/dpdk-{DPDK_VERSION}.tar.xz"
DPDK_MD5SUM = "382d5fdd8ecb1d8e0be6d70dfc5eec96"
PKG_NAME = "libdpdk"

DEPS_DIR = Path("deps")
SOURCE_DIR = DEPS_DIR / "src"
BUILD_DIR = DEPS_DIR / "build"
INSTALL_DIR = DEPS_DIR / "install"
SHIM_BUILD_DIR = DEPS_DIR / "shim"
INSTALL_PKG_CONFIG_SUBDIR = Path("lib") / "x86_64-linux-gnu" / "pkgconfig"
SYSTEM_PKG_CONFIG_DIR = "/usr/lib/x86_64-linux-gnu/pkgconfig"

DEFAULT_MAP = Path("dpdk.map")
DEFAULT_HEADER = Path("csrc") / "header.h"
DEFAULT_SHIM = Path("csrc") / "impl.c"
DEFAULT_OUTPUT_DIR = Path("src")
ENTRY_FILENAME = "lib.rs"
SHIM_LIBRARY = "impl"

FORCE_ENV = "FORCE"
PKG_CONFIG_ENV = "PKG_CONFIG_PATH"
CARGO_OUT_DIR_ENV = "OUT_DIR"
FORCE_TRUTHY = {"yes", "y", "true", "on", "1"}


# ===--- Build errors ---=== #


VALID_ERROR_CODES = {
    "TOOL_MISSING",
    "TOOL_FAILED",
    "FORMAT_ERROR",
    "UNKNOWN_FIELD",
    "INCOMPLETE_DESCRIPTOR",
    "VERSION_MISMATCH",
    "INTEGRITY_ERROR",
    "ARCHIVE_LAYOUT",
    "MISSING_DESCRIPTOR",
    "INVALID_FLAG",
}

# On Ubuntu the driver needs meson, pyelftools, clang, libnuma-dev and friends.
TOOL_HINTS = {
    "wget": "Install wget or curl (apt install wget).",
    "curl": "Install curl or wget (apt install curl).",
    "tar": "Install tar with xz support (apt install tar xz-utils).",
    "meson": "Install meson and pyelftools (apt install meson python3-pyelftools).",
    "ninja": "Install ninja (apt install ninja-build).",
    "pkg-config": "Install pkg-config (apt install pkg-config).",
    "bindgen": "Install bindgen and clang (cargo install bindgen-cli; apt install clang).",
    "cc": "Install a C toolchain and NUMA headers (apt install build-essential libnuma-dev).",
    "ar": "Install binutils (apt install binutils).",
}


class BuildError(Exception):
    """Base class for every fatal failure of a build run.

    Subclasses pin ``code`` to one of VALID_ERROR_CODES. Components raise;
    only main() turns a BuildError into a message and a nonzero exit.
    """

    code = ""

    def __init__(self, message: str, suggestion: str | None = None):
        if self.code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown build error code: {self.code}")
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion


class ToolMissing(BuildError):
    code = "TOOL_MISSING"

    def __init__(self, tool: str):
        super().__init__(f"Required tool not found: {tool}", TOOL_HINTS.get(tool))
        self.tool = tool


class ToolFailed(BuildError):
    code = "TOOL_FAILED"

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        output: str,
        suggestion: str | None = None,
    ):
        command = " ".join(argv)
        detail = output.strip() or "(no output)"
        super().__init__(
            f"`{command}` exited with status {returncode}, stderr: {detail}",
            suggestion,
        )
        self.argv = tuple(argv)
        self.returncode = returncode
        self.output = output


class FormatError(BuildError):
    code = "FORMAT_ERROR"

    def __init__(self, message: str, line: int, offset: int | None = None):
        where = f"line {line}" if offset is None else f"offset {offset} of line {line}"
        super().__init__(f"Invalid map format at {where}: {message}")
        self.line = line
        self.offset = offset


class UnknownFieldError(FormatError):
    code = "UNKNOWN_FIELD"

    def __init__(self, field_name: str, line: int, offset: int | None = None):
        super().__init__(
            f"unknown field {field_name!r} (expected function, var or type)",
            line,
            offset,
        )
        self.field = field_name


class IncompleteDescriptorError(FormatError):
    code = "INCOMPLETE_DESCRIPTOR"

    def __init__(self, name: str, line: int):
        super().__init__(f"descriptor {name!r} is never closed with '}};'", line)
        self.name = name


class VersionMismatch(BuildError):
    code = "VERSION_MISMATCH"

    def __init__(
        self, subject: str, found: str, required: str, suggestion: str | None = None
    ):
        super().__init__(
            f"{subject} reports version {found!r}, required {required!r}", suggestion
        )
        self.subject = subject
        self.found = found
        self.required = required


class IntegrityError(BuildError):
    code = "INTEGRITY_ERROR"

    def __init__(self, path: Path, expected: str, actual: str):
        super().__init__(
            f"MD5 checksum of {path} is {actual}, expected {expected}",
            "Delete the archive and rerun with FORCE=yes to fetch it again.",
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class ArchiveLayoutError(BuildError):
    code = "ARCHIVE_LAYOUT"


class MissingDescriptorError(BuildError):
    code = "MISSING_DESCRIPTOR"

    def __init__(self, descriptor: str, module: str):
        super().__init__(
            f"Module {module!r} requests descriptor {descriptor!r}, "
            "which is not in the descriptor map",
            f"Add a '{descriptor} {{ ... }};' block to the map or drop it from "
            f"module {module!r}.",
        )
        self.descriptor = descriptor
        self.module = module


class InvalidFlag(BuildError):
    code = "INVALID_FLAG"

    def __init__(self, flag: str, reason: str):
        super().__init__(f"Invalid linker option {flag!r}: {reason}")
        self.flag = flag


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class ModuleSpec:
    """A named group of descriptors emitted as one generated module."""

    name: str
    descriptors: tuple[str, ...]


DEFAULT_MODULES: tuple[ModuleSpec, ...] = (
    ModuleSpec(
        "eal",
        (
            "eal",
            "lcore",
            "mbuf",
            "mempool",
            "ethdev",
            "build_config",
            "config",
            "errno",
        ),
    ),
    ModuleSpec("power", ("power",)),
)


@dataclass(frozen=True)
class GenerateConfig:
    root: Path
    map_path: Path
    header: Path
    shim: Path
    output_dir: Path
    shim_out_dir: Path
    modules: tuple[ModuleSpec, ...]
    force: bool


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    filter_text: str | None
    info_descriptor: str | None
    map_path: Path


VALID_CONFIG_ERROR_CODES = {
    "INVALID_MODULE",
    "DUPLICATE_MODULE",
    "CONFLICT_GENERATE_DISCOVERY",
    "FILTER_WITHOUT_LIST",
    "PATH_NOT_FOUND",
}
_MODULE_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_CONFIG_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def parse_force(raw: str | None) -> bool:
    if raw is None:
        return False
    return raw.strip().lower() in FORCE_TRUTHY


def parse_module_spec(raw: str) -> ModuleSpec:
    name, sep, members = raw.partition("=")
    name = name.strip()
    if not sep:
        raise ConfigError(
            "INVALID_MODULE",
            f"Invalid --module value: {raw}",
            "Use --module NAME=descriptor[,descriptor...] (for example --module eal=eal,lcore).",
        )
    if not _MODULE_NAME_RE.match(name):
        raise ConfigError(
            "INVALID_MODULE",
            f"Invalid module name: {name!r}",
            "Module names become Rust module and Cargo feature names: "
            "use lowercase letters, digits and '_'.",
        )
    descriptors = tuple(part.strip() for part in members.split(",") if part.strip())
    if not descriptors:
        raise ConfigError(
            "INVALID_MODULE",
            f"Module {name!r} lists no descriptors",
            f"Name at least one map block: --module {name}=<descriptor>.",
        )
    return ModuleSpec(name, descriptors)


def normalize_modules(raw_modules: list[str] | None) -> tuple[ModuleSpec, ...]:
    if not raw_modules:
        return DEFAULT_MODULES

    modules: list[ModuleSpec] = []
    seen: set[str] = set()
    for raw in raw_modules:
        module = parse_module_spec(raw)
        if module.name in seen:
            raise ConfigError(
                "DUPLICATE_MODULE",
                f"Module {module.name!r} is given more than once",
                "Merge the descriptor lists into a single --module entry.",
            )
        seen.add(module.name)
        modules.append(module)
    return tuple(modules)


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def resolve_under(root: Path, path: Path) -> Path:
    return path if path.is_absolute() else root / path


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build DPDK and generate Rust FFI bindings for it"
    )

    parser.add_argument("--root", type=Path, default=None)
    parser.add_argument("--map", type=Path, default=DEFAULT_MAP)
    parser.add_argument("--header", type=Path, default=DEFAULT_HEADER)
    parser.add_argument("--shim", type=Path, default=DEFAULT_SHIM)
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--module", action="append", default=None)
    parser.add_argument("--force", action="store_true", default=False)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument(
        "--list-descriptors", action="store_true", default=False
    )
    discovery_group.add_argument("--info", type=str, default=None)

    parser.add_argument("--filter", type=str, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(
    args: argparse.Namespace, environ: Mapping[str, str] | None = None
) -> GenerateConfig | DiscoveryConfig:
    env = os.environ if environ is None else environ
    has_discovery_command = bool(args.list_descriptors or args.info)
    has_generate_input = bool(args.module or args.force)

    if args.filter and not args.list_descriptors:
        raise ConfigError(
            "FILTER_WITHOUT_LIST",
            "--filter requires --list-descriptors.",
            "Add --list-descriptors or remove --filter.",
        )

    if has_generate_input and has_discovery_command:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "Generate flags cannot be combined with discovery flags.",
            "Choose either generate mode or one discovery command.",
        )

    root = validate_path_exists(
        Path.cwd() if args.root is None else args.root, "--root"
    ).resolve()
    map_path = validate_path_exists(
        resolve_under(root, args.map),
        "--map",
        "Create dpdk.map in the crate root or pass --map /path/to/dpdk.map",
    )

    if has_discovery_command:
        command = "list-descriptors" if args.list_descriptors else "info"
        return DiscoveryConfig(
            command=command,
            filter_text=args.filter,
            info_descriptor=args.info,
            map_path=map_path,
        )

    modules = normalize_modules(args.module)
    header = validate_path_exists(resolve_under(root, args.header), "--header")
    shim = validate_path_exists(resolve_under(root, args.shim), "--shim")
    cargo_out_dir = env.get(CARGO_OUT_DIR_ENV)
    shim_out_dir = Path(cargo_out_dir) if cargo_out_dir else root / SHIM_BUILD_DIR

    return GenerateConfig(
        root=root,
        map_path=map_path,
        header=header,
        shim=shim,
        output_dir=resolve_under(root, args.output_dir),
        shim_out_dir=shim_out_dir,
        modules=modules,
        force=bool(args.force) or parse_force(env.get(FORCE_ENV)),
    )


def build_config(
    argv: list[str] | None = None, environ: Mapping[str, str] | None = None
) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv), environ)


# ===--- Build context ---=== #


def resolve_pkg_config_path(root: Path, current: str | None) -> str:
    """Return the PKG_CONFIG_PATH that finds the locally installed DPDK first."""
    paths = [str(root / INSTALL_DIR / INSTALL_PKG_CONFIG_SUBDIR), SYSTEM_PKG_CONFIG_DIR]
    if current:
        paths.append(current)
    return ":".join(paths)


@dataclass
class BuildContext:
    """State shared by every component of one build run.

    Constructed once by create_context and passed explicitly to each stage,
    probe and generator call. The probed flags and the entry-file flag are
    write-once: the run must never reset them, because the aggregate entry
    file is only correct when modules are generated sequentially against a
    single context.

    Attributes:
        root: Absolute crate root. Every deps/ path is derived from it.
        force: Re-run every pipeline stage regardless of checkpoints.
        pkg_config_path: Search path handed to pkg-config subprocesses.
        cflags: Compiler flags reported by pkg-config, once probed.
        link_flags: Static link flags reported by pkg-config, once probed.
        entry_started: True once the first module recreated the entry file.
    """

    root: Path
    force: bool = False
    pkg_config_path: str = ""
    cflags: tuple[str, ...] | None = None
    link_flags: tuple[str, ...] | None = None
    entry_started: bool = False

    @property
    def deps_dir(self) -> Path:
        return self.root / DEPS_DIR

    @property
    def source_dir(self) -> Path:
        return self.root / SOURCE_DIR

    @property
    def build_dir(self) -> Path:
        return self.root / BUILD_DIR

    @property
    def install_dir(self) -> Path:
        return self.root / INSTALL_DIR

    @property
    def archive_path(self) -> Path:
        return self.deps_dir / f"dpdk-{DPDK_VERSION}.tar.xz"

    def pkg_config_env(self) -> dict[str, str]:
        return {**os.environ, PKG_CONFIG_ENV: self.pkg_config_path}

    def record_flags(
        self, cflags: Sequence[str], link_flags: Sequence[str]
    ) -> None:
        if self.cflags is not None or self.link_flags is not None:
            raise RuntimeError("Probed flags are already recorded for this run")
        self.cflags = tuple(cflags)
        self.link_flags = tuple(link_flags)

    def claim_entry_file(self) -> bool:
        """Return True exactly once per run: for the first module written."""
        if self.entry_started:
            return False
        self.entry_started = True
        return True


def create_context(
    root: Path, force: bool = False, environ: Mapping[str, str] | None = None
) -> BuildContext:
    env = os.environ if environ is None else environ
    root = Path(root).resolve()
    return BuildContext(
        root=root,
        force=force,
        pkg_config_path=resolve_pkg_config_path(root, env.get(PKG_CONFIG_ENV)),
    )


# ===--- External tools ---=== #


Runner = Callable[..., "subprocess.CompletedProcess[str]"]


def run_tool(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> "subprocess.CompletedProcess[str]":
    """Run an external tool to completion and capture its output.

    Blocks until the process exits; there is no timeout. A missing executable
    surfaces as ToolMissing. The exit status is left to the caller.
    """
    try:
        return subprocess.run(
            list(argv),
            cwd=cwd,
            env=None if env is None else dict(env),
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as err:
        raise ToolMissing(argv[0]) from err


def run_checked(
    runner: Runner,
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    suggestion: str | None = None,
) -> "subprocess.CompletedProcess[str]":
    result = runner(argv, cwd=cwd, env=env)
    if result.returncode != 0:
        # meson reports configuration errors on stdout
        raise ToolFailed(
            argv, result.returncode, result.stderr or result.stdout, suggestion
        )
    return result


# ===--- Descriptor map parser ---=== #


FIELD_KEYS: tuple[str, ...] = ("function", "var", "type")

_NAME_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-"
)
_PUNCTUATION = {"{": "LBRACE", "}": "RBRACE", ":": "COLON", ";": "SEMI"}
_WORD_BREAKS = frozenset(" \t\r\n{}:;")
_ALLOWED_CONTROL_BYTES = frozenset(b"\t\n\r")


@dataclass(frozen=True)
class LibraryDescriptor:
    """Exported symbols of one DPDK library, as listed in the map.

    Identifier order within each field follows the map text.
    """

    name: str
    functions: tuple[str, ...] = ()
    vars: tuple[str, ...] = ()
    types: tuple[str, ...] = ()


class Token(NamedTuple):
    kind: str
    text: str
    line: int
    offset: int


def check_map_encoding(data: bytes) -> str:
    """Reject anything but printable ASCII and decode the map text.

    Tabs, carriage returns and newlines are the only control bytes allowed.
    The check runs over the whole buffer before any token is produced.

    Raises:
        FormatError: At the line and 1-based offset of the first bad byte.
    """
    line = 1
    offset = 0
    for byte in data:
        if byte == 0x0A:
            line += 1
            offset = 0
            continue
        offset += 1
        if 0x20 <= byte <= 0x7E or byte in _ALLOWED_CONTROL_BYTES:
            continue
        raise FormatError(f"byte 0x{byte:02x} is not printable ASCII", line, offset)
    return data.decode("ascii")


def tokenize_map(text: str) -> list[Token]:
    """Split map text into WORD, punctuation and NEWLINE tokens.

    Spaces, tabs and carriage returns only separate tokens. Every token
    carries its 1-based line and 1-based offset within that line. The list
    always ends with a single EOF token.
    """
    tokens: list[Token] = []
    pos = 0
    line = 1
    line_start = 0
    length = len(text)

    while pos < length:
        ch = text[pos]
        if ch == "\n":
            tokens.append(Token("NEWLINE", ch, line, pos - line_start + 1))
            pos += 1
            line += 1
            line_start = pos
            continue
        if ch in " \t\r":
            pos += 1
            continue
        if ch in _PUNCTUATION:
            tokens.append(Token(_PUNCTUATION[ch], ch, line, pos - line_start + 1))
            pos += 1
            continue

        start = pos
        while pos < length and text[pos] not in _WORD_BREAKS:
            pos += 1
        tokens.append(Token("WORD", text[start:pos], line, start - line_start + 1))

    tokens.append(Token("EOF", "", line, pos - line_start + 1))
    return tokens


def _describe_token(token: Token) -> str:
    if token.kind == "NEWLINE":
        return "line break"
    if token.kind == "EOF":
        return "end of input"
    return repr(token.text)


class _MapParser:
    """Recursive-descent parser over the token list of one map file.

    Grammar:
        file     := block*
        block    := NAME '{' NEWLINE field* '}' ';' NEWLINE?
        field    := KEY ':' NEWLINE ident (';' NEWLINE? ident)* ';'? NEWLINE
        KEY      := "function" | "var" | "type"

    Blank lines are skipped before blocks, around fields and between a field
    key and its first identifier. An identifier list ends at a blank line,
    at the next ``key:`` header or at the closing '}'; the final ';' before
    '}' is optional.

    An identifier is any run of printable non-space characters except the
    delimiters '{', '}', ':' and ';', which always end a word. C symbol
    names never contain them.
    """

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.pos = 0
        self.block_name: str | None = None

    def peek(self, ahead: int = 0) -> Token:
        return self.tokens[min(self.pos + ahead, len(self.tokens) - 1)]

    def advance(self) -> Token:
        token = self.peek()
        if token.kind != "EOF":
            self.pos += 1
        return token

    def skip_newlines(self) -> None:
        while self.peek().kind == "NEWLINE":
            self.advance()

    def fail(self, token: Token, message: str) -> NoReturn:
        if token.kind == "EOF" and self.block_name is not None:
            raise IncompleteDescriptorError(self.block_name, token.line)
        raise FormatError(
            f"{message}, found {_describe_token(token)}", token.line, token.offset
        )

    def expect(self, kind: str, what: str) -> Token:
        token = self.peek()
        if token.kind != kind:
            self.fail(token, f"expected {what}")
        return self.advance()

    def at_field_header(self) -> bool:
        return self.peek().kind == "WORD" and self.peek(1).kind == "COLON"

    def parse(self) -> tuple[LibraryDescriptor, ...]:
        descriptors: list[LibraryDescriptor] = []
        while True:
            self.skip_newlines()
            if self.peek().kind == "EOF":
                return tuple(descriptors)
            descriptors.append(self.parse_block())

    def parse_block(self) -> LibraryDescriptor:
        name_token = self.peek()
        if name_token.kind != "WORD":
            self.fail(name_token, "expected descriptor name")
        for index, ch in enumerate(name_token.text):
            if ch not in _NAME_CHARS:
                raise FormatError(
                    f"invalid character {ch!r} in descriptor name",
                    name_token.line,
                    name_token.offset + index,
                )
        self.advance()
        self.block_name = name_token.text

        self.expect("LBRACE", "'{' after descriptor name")
        self.expect("NEWLINE", "line break after '{'")

        fields: dict[str, list[str]] = {key: [] for key in FIELD_KEYS}
        while True:
            self.skip_newlines()
            token = self.peek()
            if token.kind == "RBRACE":
                break
            if not self.at_field_header():
                self.fail(token, "expected field keyword or '}'")
            self.parse_field(fields)

        self.advance()
        self.expect("SEMI", "';' after '}'")
        if self.peek().kind == "NEWLINE":
            self.advance()
        self.block_name = None

        return LibraryDescriptor(
            name=name_token.text,
            functions=tuple(fields["function"]),
            vars=tuple(fields["var"]),
            types=tuple(fields["type"]),
        )

    def parse_field(self, fields: dict[str, list[str]]) -> None:
        key_token = self.advance()
        if key_token.text not in fields:
            raise UnknownFieldError(key_token.text, key_token.line, key_token.offset)
        self.advance()
        self.expect("NEWLINE", f"line break after '{key_token.text}:'")
        self.skip_newlines()

        target = fields[key_token.text]
        while True:
            if self.peek().kind != "WORD" or self.at_field_header():
                self.fail(self.peek(), f"expected identifier in '{key_token.text}' field")
            target.append(self.advance().text)

            token = self.peek()
            if token.kind == "SEMI":
                self.advance()
                token = self.peek()
                if token.kind == "RBRACE":
                    return
                if token.kind == "NEWLINE":
                    self.advance()
                    if self.peek().kind in ("NEWLINE", "RBRACE") or self.at_field_header():
                        return
                continue
            if token.kind == "NEWLINE":
                self.advance()
                return
            if token.kind == "RBRACE":
                return
            self.fail(token, "expected ';' or line break after identifier")


def parse_descriptor_map(data: bytes) -> tuple[LibraryDescriptor, ...]:
    """Parse descriptor map bytes into descriptors in file order.

    Raises:
        FormatError: Non-ASCII input or misplaced delimiters.
        UnknownFieldError: A field keyword other than function/var/type.
        IncompleteDescriptorError: Input ends inside a block.
    """
    text = check_map_encoding(data)
    return _MapParser(tokenize_map(text)).parse()


def load_descriptor_map(path: Path) -> tuple[LibraryDescriptor, ...]:
    return parse_descriptor_map(Path(path).read_bytes())


# ===--- Descriptor registry and module composer ---=== #


@dataclass(frozen=True)
class AllowList:
    """Symbol names handed to bindgen for one module.

    Duplicates are kept; bindgen accepts repeated allow-list entries.
    """

    functions: tuple[str, ...] = ()
    vars: tuple[str, ...] = ()
    types: tuple[str, ...] = ()


@dataclass(frozen=True)
class ComposedModule:
    name: str
    descriptors: tuple[LibraryDescriptor, ...]
    allow_list: AllowList


class DescriptorRegistry:
    def __init__(self, descriptors: Sequence[LibraryDescriptor]):
        self.descriptors = tuple(descriptors)

    def __len__(self) -> int:
        return len(self.descriptors)

    def lookup(self, name: str) -> LibraryDescriptor | None:
        for descriptor in self.descriptors:
            if descriptor.name == name:
                return descriptor
        return None

    def names(self) -> tuple[str, ...]:
        return tuple(descriptor.name for descriptor in self.descriptors)


def compose_module(registry: DescriptorRegistry, module: ModuleSpec) -> ComposedModule:
    selected: list[LibraryDescriptor] = []
    for name in module.descriptors:
        descriptor = registry.lookup(name)
        if descriptor is None:
            raise MissingDescriptorError(name, module.name)
        selected.append(descriptor)

    allow_list = AllowList(
        functions=tuple(name for d in selected for name in d.functions),
        vars=tuple(name for d in selected for name in d.vars),
        types=tuple(name for d in selected for name in d.types),
    )
    return ComposedModule(module.name, tuple(selected), allow_list)


def compose_modules(
    registry: DescriptorRegistry, modules: Sequence[ModuleSpec]
) -> tuple[ComposedModule, ...]:
    return tuple(compose_module(registry, module) for module in modules)


# ===--- Binding generator ---=== #


LINT_PRELUDE = (
    "#![allow(non_upper_case_globals)]\n"
    "#![allow(non_camel_case_types)]\n"
    "#![allow(non_snake_case)]\n"
)


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing a single generated file.

    Attributes:
        filename: Filename written, e.g. "eal.rs" or "lib.rs".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the file.
        byte_count: Number of bytes in the file.
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


def _file_result(path: Path) -> FileWriteResult:
    resolved = path.resolve()
    data = resolved.read_bytes()
    return FileWriteResult(
        filename=path.name,
        path=resolved,
        line_count=data.count(b"\n"),
        byte_count=len(data),
    )


def build_bindgen_command(
    header: Path, allow_list: AllowList, cflags: Sequence[str]
) -> list[str]:
    argv = ["bindgen", "--generate-inline-functions"]
    for name in allow_list.functions:
        argv.extend(["--allowlist-function", name])
    for name in allow_list.vars:
        argv.extend(["--allowlist-var", name])
    for name in allow_list.types:
        argv.extend(["--allowlist-type", name])
    argv.append(str(header))
    argv.append("--")
    argv.extend(cflags)
    return argv


def extract_bindings(
    runner: Runner, header: Path, allow_list: AllowList, cflags: Sequence[str]
) -> str:
    """Run bindgen for one allow-list and return the generated Rust verbatim."""
    result = run_checked(runner, build_bindgen_command(header, allow_list, cflags))
    return result.stdout


def format_entry_module(name: str) -> str:
    return (
        f'#[cfg(feature = "{name}")]\n'
        f"mod {name};\n"
        f'#[cfg(feature = "{name}")]\n'
        f"pub use {name}::*;\n"
    )


def write_module_bindings(
    output_dir: Path, module_name: str, source: str
) -> FileWriteResult:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    file_path = output_dir / f"{module_name}.rs"
    file_path.write_text(source, encoding="utf-8")
    return _file_result(file_path)


def append_entry_module(ctx: BuildContext, entry_path: Path, module_name: str) -> None:
    """Register a generated module in the aggregate entry file.

    The first module of the run truncates the entry file and writes the lint
    prelude; every later module appends to the existing file. The choice is
    made by ctx.claim_entry_file(), not by inspecting the file.

    Raises:
        OSError: If a later module finds no entry file to append to.
    """
    if ctx.claim_entry_file():
        entry_path.parent.mkdir(parents=True, exist_ok=True)
        entry_path.write_text(
            LINT_PRELUDE + format_entry_module(module_name), encoding="utf-8"
        )
        return

    with entry_path.open("r+", encoding="utf-8") as handle:
        handle.seek(0, os.SEEK_END)
        handle.write(format_entry_module(module_name))


def generate_module(
    ctx: BuildContext,
    runner: Runner,
    module: ComposedModule,
    header: Path,
    output_dir: Path,
) -> FileWriteResult:
    if ctx.cflags is None:
        raise RuntimeError("Compiler flags must be probed before generating bindings")
    source = extract_bindings(runner, header, module.allow_list, ctx.cflags)
    result = write_module_bindings(output_dir, module.name, source)
    append_entry_module(ctx, Path(output_dir) / ENTRY_FILENAME, module.name)
    return result


def generate_bindings(
    ctx: BuildContext,
    runner: Runner,
    modules: Sequence[ComposedModule],
    header: Path,
    output_dir: Path,
) -> tuple[FileWriteResult, ...]:
    """Generate every module in order, then report the entry file last."""
    files = [generate_module(ctx, runner, module, header, output_dir) for module in modules]
    if modules:
        files.append(_file_result(Path(output_dir) / ENTRY_FILENAME))
    return tuple(files)


# ===--- Flag interpreter ---=== #


LINK_SEARCH_NATIVE = "native-search"
LINK_STATIC_WHOLE_ARCHIVE = "static-whole-archive"
LINK_STATIC = "static"
LINK_DYLIB = "dylib"


@dataclass(frozen=True)
class LinkDirective:
    kind: str
    value: str

    def render(self) -> str:
        if self.kind == LINK_SEARCH_NATIVE:
            return f"cargo:rustc-link-search=native={self.value}"
        if self.kind == LINK_STATIC_WHOLE_ARCHIVE:
            return f"cargo:rustc-link-lib=static:+whole-archive,-bundle={self.value}"
        if self.kind == LINK_STATIC:
            return f"cargo:rustc-link-lib=static={self.value}"
        if self.kind == LINK_DYLIB:
            return f"cargo:rustc-link-lib={self.value}"
        raise ValueError(f"Unknown link directive kind: {self.kind}")


def probe_package(ctx: BuildContext, runner: Runner) -> str:
    """Check the installed DPDK version and record its flags on ctx.

    Flags are queried only when ctx has none recorded yet, so repeated
    probes within one run reuse the first answer.

    Returns:
        The version string reported by pkg-config.
    """
    env = ctx.pkg_config_env()
    result = run_checked(
        runner,
        ["pkg-config", "--modversion", PKG_NAME],
        env=env,
        suggestion="DPDK was not installed by the build driver; rerun with FORCE=yes.",
    )
    version = result.stdout.strip()
    if not version.startswith(DPDK_VERSION):
        raise VersionMismatch(
            f"pkg-config {PKG_NAME}",
            version,
            DPDK_VERSION,
            f"Another DPDK installation shadows {ctx.install_dir}; check {PKG_CONFIG_ENV}.",
        )

    if ctx.cflags is None:
        cflags = run_checked(runner, ["pkg-config", "--cflags", PKG_NAME], env=env)
        libs = run_checked(
            runner, ["pkg-config", "--libs", "--static", PKG_NAME], env=env
        )
        ctx.record_flags(cflags.stdout.split(), libs.stdout.split())
    return version


def interpret_link_flag(flag: str) -> LinkDirective | None:
    if flag.startswith("-L"):
        return LinkDirective(LINK_SEARCH_NATIVE, flag[2:])

    if flag.startswith("-l"):
        if flag.endswith(".a"):
            if not flag.startswith("-l:lib"):
                raise InvalidFlag(flag, "static archives must be spelled -l:lib<name>.a")
            return LinkDirective(LINK_STATIC_WHOLE_ARCHIVE, flag[6:-2])
        # rte libraries are already linked whole-archive above
        if flag.startswith("-lrte"):
            return None
        return LinkDirective(LINK_DYLIB, flag[2:])

    if flag == "-pthread":
        return LinkDirective(LINK_DYLIB, "pthread")
    if flag.startswith("-Wl"):
        return None
    raise InvalidFlag(flag, "not a recognised pkg-config link flag")


def interpret_link_flags(flags: Sequence[str]) -> tuple[LinkDirective, ...]:
    directives: list[LinkDirective] = []
    for flag in flags:
        directive = interpret_link_flag(flag)
        if directive is not None:
            directives.append(directive)
    return tuple(directives)


# ===--- Staged pipeline ---=== #


StageAction = Callable[[BuildContext, Runner], None]


@dataclass(frozen=True)
class Stage:
    """One checkpointed step of the dependency pipeline.

    The stage's marker, deps/<name>.ok, is both its precondition (present
    means the step can be skipped) and its postcondition (created only after
    the action returns).
    """

    name: str
    action: StageAction


@dataclass(frozen=True)
class PipelineResult:
    executed: tuple[str, ...]
    skipped: tuple[str, ...]


def stage_marker(ctx: BuildContext, name: str) -> Path:
    return ctx.deps_dir / f"{name}.ok"


def check_stage(ctx: BuildContext, name: str) -> bool:
    return stage_marker(ctx, name).is_file()


def run_pipeline(
    ctx: BuildContext,
    stages: Sequence[Stage] | None = None,
    runner: Runner = run_tool,
) -> PipelineResult:
    """Run the pipeline stages in order, honouring checkpoints.

    A stage is skipped only when force is off, no earlier stage ran in this
    run, and its marker exists. Once a stage runs, every later stage runs too.
    Each executed stage removes its marker first and recreates it only after
    its action succeeds, so a failure leaves that stage to be redone.

    Args:
        ctx: Run context; ctx.force forces every stage.
        stages: Ordered stages. Defaults to PIPELINE_STAGES.
        runner: Tool runner passed to every stage action.

    Returns:
        PipelineResult naming the executed and skipped stages in order.

    Raises:
        BuildError: Propagated from the first failing stage action.
    """
    if stages is None:
        stages = PIPELINE_STAGES

    executed: list[str] = []
    skipped: list[str] = []
    forced = ctx.force
    for stage in stages:
        marker = stage_marker(ctx, stage.name)
        if not forced and marker.is_file():
            print(f"  {stage.name}: skipped (checkpoint present)")
            skipped.append(stage.name)
            continue

        forced = True
        marker.unlink(missing_ok=True)
        print(f"  {stage.name}: running")
        stage.action(ctx, runner)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()
        executed.append(stage.name)

    return PipelineResult(executed=tuple(executed), skipped=tuple(skipped))


def fetch_archive(ctx: BuildContext, runner: Runner) -> None:
    archive = ctx.archive_path.name
    try:
        run_checked(runner, ["wget", "-O", archive, DOWNLOAD_URL], cwd=ctx.deps_dir)
    except ToolMissing:
        run_checked(
            runner,
            ["curl", "-s", "-f", "-L", "-o", archive, DOWNLOAD_URL],
            cwd=ctx.deps_dir,
        )


def file_md5(path: Path) -> str:
    digest = hashlib.md5()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_archive(path: Path, expected: str) -> None:
    actual = file_md5(path)
    if actual != expected.lower():
        raise IntegrityError(path, expected, actual)


def extracted_dir_candidates(deps_dir: Path, version: str) -> tuple[Path, Path]:
    # Upstream drops a trailing ".0" from the extracted directory name.
    stem = version.removesuffix(".0")
    return deps_dir / f"dpdk-{stem}", deps_dir / f"dpdk-stable-{stem}"


def locate_extracted_source(deps_dir: Path, version: str) -> Path:
    candidates = extracted_dir_candidates(deps_dir, version)
    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    names = " or ".join(str(c) for c in candidates)
    raise ArchiveLayoutError(
        f"Cannot find the extracted DPDK sources: expected {names}",
        "Check that DOWNLOAD_URL points at a dpdk or dpdk-stable release tarball.",
    )


def replace_source_dir(extracted: Path, source_dir: Path) -> None:
    if source_dir.is_symlink():
        raise ArchiveLayoutError(
            f"{source_dir} is a symbolic link",
            f"Remove {source_dir} manually and rerun.",
        )
    if source_dir.is_dir():
        shutil.rmtree(source_dir)
    elif source_dir.exists():
        source_dir.unlink()
    extracted.rename(source_dir)


def download_stage(ctx: BuildContext, runner: Runner) -> None:
    ctx.deps_dir.mkdir(parents=True, exist_ok=True)
    print(f"    Fetching: {DOWNLOAD_URL}")
    fetch_archive(ctx, runner)
    verify_archive(ctx.archive_path, DPDK_MD5SUM)
    run_checked(runner, ["tar", "-xf", ctx.archive_path.name], cwd=ctx.deps_dir)
    extracted = locate_extracted_source(ctx.deps_dir, DPDK_VERSION)
    replace_source_dir(extracted, ctx.source_dir)


def check_meson_version(runner: Runner) -> str:
    version = run_checked(runner, ["meson", "--version"]).stdout.strip()
    # Plain string comparison, matching how the minimum has always been checked.
    if version < MESON_VERSION:
        raise VersionMismatch("meson", version, MESON_VERSION, TOOL_HINTS["meson"])
    return version


def build_meson_setup_command(ctx: BuildContext) -> list[str]:
    argv = ["meson", "setup"]
    if (ctx.build_dir / "meson-private").is_dir():
        argv.append("--wipe")
    argv.extend(
        ["--prefix", str(ctx.install_dir), str(ctx.build_dir), str(ctx.source_dir)]
    )
    return argv


def configure_stage(ctx: BuildContext, runner: Runner) -> None:
    check_meson_version(runner)
    run_checked(runner, build_meson_setup_command(ctx), cwd=ctx.root)


def build_stage(ctx: BuildContext, runner: Runner) -> None:
    run_checked(runner, ["ninja", "-C", str(ctx.build_dir)], cwd=ctx.root)


def install_stage(ctx: BuildContext, runner: Runner) -> None:
    run_checked(runner, ["ninja", "-C", str(ctx.build_dir), "install"], cwd=ctx.root)


PIPELINE_STAGES: tuple[Stage, ...] = (
    Stage("download", download_stage),
    Stage("configure", configure_stage),
    Stage("build", build_stage),
    Stage("install", install_stage),
)


# ===--- Shim library ---=== #


def compile_shim(
    ctx: BuildContext, runner: Runner, source: Path, out_dir: Path
) -> tuple[LinkDirective, ...]:
    """Compile the C shim against the probed cflags into a static archive.

    The shim wraps DPDK's static inline helpers so bindgen-generated
    declarations have real symbols to link against.
    """
    if ctx.cflags is None:
        raise RuntimeError("Compiler flags must be probed before compiling the shim")
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    obj = out_dir / f"{SHIM_LIBRARY}.o"
    archive = out_dir / f"lib{SHIM_LIBRARY}.a"
    run_checked(runner, ["cc", "-O3", *ctx.cflags, "-c", str(source), "-o", str(obj)])
    run_checked(runner, ["ar", "crs", str(archive), str(obj)])
    return (
        LinkDirective(LINK_SEARCH_NATIVE, str(out_dir)),
        LinkDirective(LINK_STATIC, SHIM_LIBRARY),
    )


def rerun_directives(paths: Sequence[Path]) -> list[str]:
    return [f"cargo:rerun-if-changed={path}" for path in paths]


def emit_directives(lines: Sequence[str]) -> None:
    for line in lines:
        print(line)


# ===--- Discovery ---=== #


def filter_descriptors_by_text(
    descriptors: Sequence[LibraryDescriptor], filter_text: str
) -> tuple[LibraryDescriptor, ...]:
    needle = filter_text.lower()
    return tuple(d for d in descriptors if needle in d.name.lower())


def format_descriptors_table(
    descriptors: Sequence[LibraryDescriptor], map_path: Path
) -> str:
    lines = [f"Descriptors in {map_path.name} ({len(descriptors)}):", ""]
    if not descriptors:
        lines.append("  (none)")
        lines.append("")
        return "\n".join(lines)

    width = max(12, max(len(d.name) for d in descriptors) + 2)
    lines.append(f"  {'Name':<{width}}{'Functions':>10}{'Vars':>6}{'Types':>7}")
    for d in descriptors:
        lines.append(
            f"  {d.name:<{width}}{len(d.functions):>10}{len(d.vars):>6}{len(d.types):>7}"
        )
    lines.append("")
    return "\n".join(lines)


def format_descriptor_detail(descriptor: LibraryDescriptor) -> str:
    lines = [f"{descriptor.name}", ""]
    for label, names in (
        ("Functions", descriptor.functions),
        ("Vars", descriptor.vars),
        ("Types", descriptor.types),
    ):
        lines.append(f"  {label} ({len(names)}):")
        if names:
            lines.extend(f"    {name}" for name in names)
        else:
            lines.append("    (none)")
    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    """Print information from the descriptor map without building anything.

    Raises:
        SystemExit(1): When --info names a descriptor that is not in the map.
        BuildError: Malformed map text; presented by main().
    """
    registry = DescriptorRegistry(load_descriptor_map(config.map_path))

    if config.command == "list-descriptors":
        descriptors = registry.descriptors
        if config.filter_text is not None:
            descriptors = filter_descriptors_by_text(descriptors, config.filter_text)
        print(format_descriptors_table(descriptors, config.map_path), end="")

    elif config.command == "info":
        assert config.info_descriptor is not None
        descriptor = registry.lookup(config.info_descriptor)
        if descriptor is None:
            print(
                f"Error: descriptor '{config.info_descriptor}' not found in "
                f"{config.map_path}",
                file=sys.stderr,
            )
            raise SystemExit(1)
        print(format_descriptor_detail(descriptor), end="")


# ===--- Generation summary ---=== #


@dataclass(frozen=True)
class ModuleCount:
    """Allow-list sizes of one generated module for the summary table."""

    name: str
    descriptors: int
    functions: int
    vars: int
    types: int


@dataclass(frozen=True)
class GenerationSummary:
    """Complete, immutable data for the post-build console report.

    Attributes:
        dpdk_version: Version reported by pkg-config.
        output_dir: Directory the generated Rust files were written to.
        executed: Pipeline stages that ran this time.
        skipped: Pipeline stages skipped on a present checkpoint.
        modules: One ModuleCount per generated module, in generation order.
        files: Write results, module files first and the entry file last.
        directive_count: Number of Cargo link directives emitted.
    """

    dpdk_version: str
    output_dir: str
    executed: tuple[str, ...]
    skipped: tuple[str, ...]
    modules: tuple[ModuleCount, ...]
    files: tuple[FileWriteResult, ...]
    directive_count: int


def build_generation_summary(
    dpdk_version: str,
    output_dir: Path,
    pipeline: PipelineResult,
    modules: Sequence[ComposedModule],
    files: Sequence[FileWriteResult],
    directive_count: int,
) -> GenerationSummary:
    return GenerationSummary(
        dpdk_version=dpdk_version,
        output_dir=str(output_dir),
        executed=pipeline.executed,
        skipped=pipeline.skipped,
        modules=tuple(
            ModuleCount(
                name=m.name,
                descriptors=len(m.descriptors),
                functions=len(m.allow_list.functions),
                vars=len(m.allow_list.vars),
                types=len(m.allow_list.types),
            )
            for m in modules
        ),
        files=tuple(files),
        directive_count=directive_count,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary as the multi-section console report.

    Returns a string with exactly one trailing newline.
    """
    lines: list[str] = [f"DPDK {summary.dpdk_version} bindings generated:", ""]
    lines.append(f"  Output:     {summary.output_dir}")
    lines.append(f"  Stages run: {', '.join(summary.executed) or '(none)'}")
    lines.append(f"  Skipped:    {', '.join(summary.skipped) or '(none)'}")
    lines.append("")
    lines.append("  Modules:")
    for m in summary.modules:
        lines.append(
            f"    {m.name:<16}{m.descriptors:>3} descriptors"
            f"{m.functions:>7} functions{m.vars:>5} vars{m.types:>6} types"
        )

    lines.append("")
    lines.append("  Files written:")
    for file_result in summary.files:
        lines.append(f"    {file_result.filename:<28} {file_result.line_count:>8,} lines")

    total_lines = sum(f.line_count for f in summary.files)
    lines.append("")
    lines.append(
        f"  Total: {total_lines:,} lines across {len(summary.files)} files, "
        f"{summary.directive_count} link directives"
    )
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main generation ---=== #


def run_build(
    config: GenerateConfig,
    runner: Runner = run_tool,
    environ: Mapping[str, str] | None = None,
) -> GenerationSummary:
    """Prepare DPDK, generate every configured module and emit link directives.

    Order: pipeline -> pkg-config probe -> map parse -> module composition ->
    per-module generation -> shim compile -> link flag interpretation ->
    Cargo directives -> summary.

    Raises:
        BuildError: Any tool, format, version, integrity or flag failure.
        OSError: Filesystem failures while writing generated files.
    """
    ctx = create_context(config.root, config.force, environ)

    print(f"Pipeline: DPDK {DPDK_VERSION} under {ctx.deps_dir}")
    pipeline = run_pipeline(ctx, runner=runner)

    version = probe_package(ctx, runner)
    assert ctx.cflags is not None and ctx.link_flags is not None
    print(
        f"  Probed: {PKG_NAME} {version}, {len(ctx.cflags)} cflags, "
        f"{len(ctx.link_flags)} link flags"
    )

    print(f"Parsing: {config.map_path}")
    registry = DescriptorRegistry(load_descriptor_map(config.map_path))
    print(f"  Descriptors: {len(registry)}")

    modules = compose_modules(registry, config.modules)
    files = generate_bindings(ctx, runner, modules, config.header, config.output_dir)
    print(f"  Written: {len(files)} files to {config.output_dir}")

    directives = (
        *compile_shim(ctx, runner, config.shim, config.shim_out_dir),
        *interpret_link_flags(ctx.link_flags),
    )
    emit_directives(
        rerun_directives([DRIVER_PATH, config.map_path, config.shim, config.header])
        + [directive.render() for directive in directives]
    )

    summary = build_generation_summary(
        version, config.output_dir, pipeline, modules, files, len(directives)
    )
    print_generation_summary(summary)
    return summary


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
            return
        run_build(config)
    except BuildError as err:
        print(f"Error [{err.code}]: {err.message}", file=sys.stderr)
        if err.suggestion:
            print(f"Hint: {err.suggestion}", file=sys.stderr)
        raise SystemExit(1) from err
    except OSError as err:
        print(f"Error: {err}", file=sys.stderr)
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
