from __future__ import annotations

import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

TOOL_DIR = Path(__file__).resolve().parent.parent
if str(TOOL_DIR) not in sys.path:
    sys.path.insert(0, str(TOOL_DIR))

import dpdkgen  # noqa: E402

SAMPLE_MAP = """\
eal {
function:

rte_eal_init;
rte_eal_cleanup;

var:

per_lcore__lcore_id;

type:

rte_lcore_state_t;
};

power {
function:

rte_power_init;
rte_power_exit;
};
"""

FAKE_CFLAGS = "-I/opt/dpdk/include -include rte_config.h -march=native\n"
FAKE_LIBS = (
    "-L/opt/dpdk/lib -l:librte_eal.a -l:librte_mbuf.a -lrte_eal -lnuma -pthread "
    "-Wl,--as-needed\n"
)


@dataclass
class RecordedCall:
    argv: list[str]
    cwd: Path | None
    env: dict[str, str] | None


@dataclass
class _Handler:
    prefix: tuple[str, ...]
    stdout: str | Callable[[list[str]], str]
    stderr: str
    returncode: int
    missing: bool
    effect: Callable[[list[str], Path | None], None] | None


@dataclass
class FakeRunner:
    """Scripted stand-in for dpdkgen.run_tool.

    Handlers match on an argv prefix; the longest prefix wins and, among
    equal prefixes, the one registered last. Unmatched commands succeed with
    empty output.
    """

    calls: list[RecordedCall] = field(default_factory=list)
    handlers: list[_Handler] = field(default_factory=list)

    def on(
        self,
        *prefix: str,
        stdout: str | Callable[[list[str]], str] = "",
        stderr: str = "",
        returncode: int = 0,
        missing: bool = False,
        effect: Callable[[list[str], Path | None], None] | None = None,
    ) -> "FakeRunner":
        self.handlers.append(
            _Handler(tuple(prefix), stdout, stderr, returncode, missing, effect)
        )
        return self

    @property
    def argvs(self) -> list[list[str]]:
        return [call.argv for call in self.calls]

    def tools(self) -> list[str]:
        return [call.argv[0] for call in self.calls]

    def __call__(self, argv, *, cwd=None, env=None):
        argv = list(argv)
        self.calls.append(RecordedCall(argv, cwd, None if env is None else dict(env)))

        best: _Handler | None = None
        for handler in self.handlers:
            if tuple(argv[: len(handler.prefix)]) != handler.prefix:
                continue
            if best is None or len(handler.prefix) >= len(best.prefix):
                best = handler

        if best is None:
            return subprocess.CompletedProcess(argv, 0, "", "")
        if best.missing:
            raise dpdkgen.ToolMissing(argv[0])
        if best.effect is not None:
            best.effect(argv, cwd)
        stdout = best.stdout(argv) if callable(best.stdout) else best.stdout
        return subprocess.CompletedProcess(argv, best.returncode, stdout, best.stderr)


def fake_bindgen_output(argv: list[str]) -> str:
    allowed = [argv[i + 1] for i, arg in enumerate(argv) if arg.startswith("--allowlist-")]
    return "/* automatically generated by rust-bindgen */\n" + "".join(
        f"// {name}\n" for name in allowed
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def installed_runner() -> FakeRunner:
    """Runner for a tree whose DPDK install is already complete."""
    runner = FakeRunner()
    runner.on("pkg-config", "--modversion", stdout=f"{dpdkgen.DPDK_VERSION}\n")
    runner.on("pkg-config", "--cflags", stdout=FAKE_CFLAGS)
    runner.on("pkg-config", "--libs", stdout=FAKE_LIBS)
    runner.on("bindgen", stdout=fake_bindgen_output)
    return runner


@pytest.fixture
def make_context(tmp_path: Path) -> Callable[..., dpdkgen.BuildContext]:
    def _make_context(**overrides: object) -> dpdkgen.BuildContext:
        values: dict[str, object] = {
            "root": tmp_path,
            "force": False,
            "pkg_config_path": "/fake/pkgconfig",
        }
        values.update(overrides)
        return dpdkgen.BuildContext(**values)

    return _make_context


@pytest.fixture
def sample_map(tmp_path: Path) -> Path:
    path = tmp_path / "dpdk.map"
    path.write_text(SAMPLE_MAP, encoding="ascii")
    return path


@pytest.fixture
def crate_root(tmp_path: Path, sample_map: Path) -> Path:
    """A crate root with map, header and shim sources in their default places."""
    csrc = tmp_path / "csrc"
    csrc.mkdir()
    (csrc / "header.h").write_text("#include <rte_eal.h>\n", encoding="utf-8")
    (csrc / "impl.c").write_text('#include "header.h"\n', encoding="utf-8")
    return tmp_path


@pytest.fixture
def mark_stages_complete() -> Callable[[dpdkgen.BuildContext], None]:
    def _mark(ctx: dpdkgen.BuildContext) -> None:
        ctx.deps_dir.mkdir(parents=True, exist_ok=True)
        for stage in dpdkgen.PIPELINE_STAGES:
            dpdkgen.stage_marker(ctx, stage.name).touch()

    return _mark
