from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

import dpdkgen
from conftest import FakeRunner

MODULE_ARGS = ["--module", "eal=eal", "--module", "power=power"]
PIPELINE_TOOLS = {"wget", "curl", "tar", "meson", "ninja"}


def _config(crate_root: Path, *extra: str) -> dpdkgen.GenerateConfig:
    config = dpdkgen.build_config(
        ["--root", str(crate_root), *MODULE_ARGS, *extra], environ={}
    )
    assert isinstance(config, dpdkgen.GenerateConfig)
    return config


@pytest.fixture
def installed_root(
    crate_root: Path,
    mark_stages_complete: Callable[[dpdkgen.BuildContext], None],
) -> Path:
    mark_stages_complete(dpdkgen.create_context(crate_root, environ={}))
    return crate_root


def test_run_build_generates_modules_and_emits_directives(
    installed_root: Path,
    installed_runner: FakeRunner,
    capsys: pytest.CaptureFixture[str],
) -> None:
    config = _config(installed_root)

    summary = dpdkgen.run_build(config, installed_runner, environ={})

    src = config.output_dir
    assert {p.name for p in src.iterdir()} == {"eal.rs", "power.rs", "lib.rs"}
    assert "// rte_eal_init\n" in (src / "eal.rs").read_text(encoding="utf-8")
    assert "// rte_power_exit\n" in (src / "power.rs").read_text(encoding="utf-8")
    assert "pub use power::*;" in (src / "lib.rs").read_text(encoding="utf-8")

    stdout_lines = capsys.readouterr().out.splitlines()
    directives = [line for line in stdout_lines if line.startswith("cargo:")]
    assert directives == [
        f"cargo:rerun-if-changed={dpdkgen.DRIVER_PATH}",
        f"cargo:rerun-if-changed={config.map_path}",
        f"cargo:rerun-if-changed={config.shim}",
        f"cargo:rerun-if-changed={config.header}",
        f"cargo:rustc-link-search=native={config.shim_out_dir}",
        "cargo:rustc-link-lib=static=impl",
        "cargo:rustc-link-search=native=/opt/dpdk/lib",
        "cargo:rustc-link-lib=static:+whole-archive,-bundle=rte_eal",
        "cargo:rustc-link-lib=static:+whole-archive,-bundle=rte_mbuf",
        "cargo:rustc-link-lib=numa",
        "cargo:rustc-link-lib=pthread",
    ]
    assert summary.skipped == ("download", "configure", "build", "install")
    assert summary.directive_count == 7
    assert [m.name for m in summary.modules] == ["eal", "power"]


def test_run_build_runs_tools_in_control_flow_order(
    installed_root: Path, installed_runner: FakeRunner
) -> None:
    dpdkgen.run_build(_config(installed_root), installed_runner, environ={})

    assert installed_runner.tools() == [
        "pkg-config",
        "pkg-config",
        "pkg-config",
        "bindgen",
        "bindgen",
        "cc",
        "ar",
    ]
    cc_argv = installed_runner.argvs[5]
    assert cc_argv[:2] == ["cc", "-O3"]
    assert "-march=native" in cc_argv


def test_second_run_skips_pipeline_and_output_is_byte_identical(
    installed_root: Path, installed_runner: FakeRunner
) -> None:
    config = _config(installed_root)
    dpdkgen.run_build(config, installed_runner, environ={})
    first = {p.name: p.read_bytes() for p in config.output_dir.iterdir()}

    second_runner = FakeRunner(handlers=list(installed_runner.handlers))
    dpdkgen.run_build(config, second_runner, environ={})
    second = {p.name: p.read_bytes() for p in config.output_dir.iterdir()}

    assert first == second
    assert not PIPELINE_TOOLS.intersection(second_runner.tools())


def test_missing_descriptor_halts_before_any_file_is_written(
    installed_root: Path, installed_runner: FakeRunner
) -> None:
    config = dpdkgen.build_config(
        ["--root", str(installed_root), "--module", "eal=eal,lcore"], environ={}
    )
    assert isinstance(config, dpdkgen.GenerateConfig)

    with pytest.raises(dpdkgen.MissingDescriptorError) as exc_info:
        dpdkgen.run_build(config, installed_runner, environ={})

    assert exc_info.value.descriptor == "lcore"
    assert exc_info.value.module == "eal"
    assert not config.output_dir.exists()
    assert "bindgen" not in installed_runner.tools()


def test_invalid_link_flag_fails_the_run(
    installed_root: Path, installed_runner: FakeRunner
) -> None:
    installed_runner.on("pkg-config", "--libs", stdout="-L/opt/lib -lfoo.a\n")

    with pytest.raises(dpdkgen.InvalidFlag) as exc_info:
        dpdkgen.run_build(_config(installed_root), installed_runner, environ={})

    assert exc_info.value.flag == "-lfoo.a"


def test_force_reruns_pipeline_before_probing(
    installed_root: Path, installed_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    ran: list[str] = []
    stages = tuple(
        dpdkgen.Stage(name, lambda ctx, runner, name=name: ran.append(name))
        for name in ("download", "configure", "build", "install")
    )
    monkeypatch.setattr(dpdkgen, "PIPELINE_STAGES", stages)

    summary = dpdkgen.run_build(
        _config(installed_root, "--force"), installed_runner, environ={}
    )

    assert ran == ["download", "configure", "build", "install"]
    assert summary.executed == ("download", "configure", "build", "install")
    assert summary.skipped == ()


def test_compile_shim_builds_static_archive(
    tmp_path: Path,
    make_context: Callable[..., dpdkgen.BuildContext],
    fake_runner: FakeRunner,
) -> None:
    ctx = make_context(cflags=("-I/opt/include",), link_flags=())
    out_dir = tmp_path / "out"

    directives = dpdkgen.compile_shim(ctx, fake_runner, Path("csrc/impl.c"), out_dir)

    assert fake_runner.argvs == [
        ["cc", "-O3", "-I/opt/include", "-c", "csrc/impl.c", "-o", str(out_dir / "impl.o")],
        ["ar", "crs", str(out_dir / "libimpl.a"), str(out_dir / "impl.o")],
    ]
    assert [d.render() for d in directives] == [
        f"cargo:rustc-link-search=native={out_dir}",
        "cargo:rustc-link-lib=static=impl",
    ]


def test_compile_shim_surfaces_compiler_errors(
    tmp_path: Path,
    make_context: Callable[..., dpdkgen.BuildContext],
    fake_runner: FakeRunner,
) -> None:
    fake_runner.on("cc", returncode=1, stderr="impl.c:3: error: unknown type name")
    ctx = make_context(cflags=(), link_flags=())

    with pytest.raises(dpdkgen.ToolFailed):
        dpdkgen.compile_shim(ctx, fake_runner, Path("impl.c"), tmp_path)

    assert fake_runner.tools() == ["cc"]


# ===--- Discovery ---=== #


def test_list_descriptors_prints_counts(
    tmp_path: Path, sample_map: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    dpdkgen.main(["--root", str(tmp_path), "--list-descriptors"])

    out = capsys.readouterr().out
    assert "Descriptors in dpdk.map (2):" in out
    eal_row = next(line for line in out.splitlines() if line.strip().startswith("eal"))
    assert eal_row.split() == ["eal", "2", "1", "1"]


def test_list_descriptors_filter_is_case_insensitive(
    tmp_path: Path, sample_map: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    dpdkgen.main(["--root", str(tmp_path), "--list-descriptors", "--filter", "POW"])

    out = capsys.readouterr().out
    assert "(1):" in out
    assert "power" in out
    assert "eal " not in out


def test_info_prints_identifiers(
    tmp_path: Path, sample_map: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    dpdkgen.main(["--root", str(tmp_path), "--info", "eal"])

    out = capsys.readouterr().out
    assert "  Functions (2):" in out
    assert "    rte_eal_cleanup" in out
    assert "  Vars (1):" in out


def test_info_unknown_descriptor_exits_1(
    tmp_path: Path, sample_map: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        dpdkgen.main(["--root", str(tmp_path), "--info", "ethdev"])

    assert exc_info.value.code == 1
    assert "descriptor 'ethdev' not found" in capsys.readouterr().err


def test_format_descriptors_table_handles_empty_selection() -> None:
    text = dpdkgen.format_descriptors_table((), Path("dpdk.map"))

    assert text.endswith("\n")
    assert "(none)" in text


# ===--- Summary ---=== #


def test_format_generation_summary_layout() -> None:
    summary = dpdkgen.GenerationSummary(
        dpdk_version="23.11.1",
        output_dir="/crate/src",
        executed=("build", "install"),
        skipped=("download", "configure"),
        modules=(dpdkgen.ModuleCount("eal", 8, 1200, 4, 310),),
        files=(
            dpdkgen.FileWriteResult("eal.rs", Path("/crate/src/eal.rs"), 15234, 600000),
            dpdkgen.FileWriteResult("lib.rs", Path("/crate/src/lib.rs"), 7, 150),
        ),
        directive_count=42,
    )

    text = dpdkgen.format_generation_summary(summary)

    lines = text.splitlines()
    assert lines[0] == "DPDK 23.11.1 bindings generated:"
    assert "  Stages run: build, install" in lines
    assert "  Skipped:    download, configure" in lines
    assert any(line.strip().startswith("eal") and "1200 functions" in line for line in lines)
    assert any("15,234 lines" in line for line in lines)
    assert "  Total: 15,241 lines across 2 files, 42 link directives" in lines
    assert text.endswith("\n") and not text.endswith("\n\n")


def test_format_generation_summary_marks_empty_stage_lists() -> None:
    summary = dpdkgen.GenerationSummary(
        dpdk_version="23.11.1",
        output_dir="/crate/src",
        executed=(),
        skipped=(),
        modules=(),
        files=(),
        directive_count=0,
    )

    text = dpdkgen.format_generation_summary(summary)

    assert "  Stages run: (none)" in text
    assert "  Skipped:    (none)" in text
