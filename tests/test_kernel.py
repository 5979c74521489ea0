"""Tests for kernel directories and configuration.

A kernel is a directory under ``concepts/`` holding a
``conceptkernel.yaml``.  These tests cover materializing the subtree,
reading the configuration back, and the small behaviours that hang off
it: the tool command, the edge allowlist and queue statistics.
"""

import sys
from pathlib import Path

import pytest
import yaml

from py_ckp.errors import InvalidFormatError, KernelExistsError, KernelNotFoundError
from py_ckp.kernel import (
    CONFIG_FILE,
    Kernel,
    KernelConfig,
    KernelKind,
    QueueStats,
    kernel_dir,
    list_kernels,
)

EDGE = "ckp://Edge.PRODUCES.Mix-to-Bake:v1"


def _create(root: Path, name: str = "Bake", **overrides: object) -> Kernel:
    """Create a kernel with sensible defaults."""
    config = KernelConfig(name=name, version="v1", **overrides)  # type: ignore[arg-type]
    return Kernel.create(root, config)


# -- Cycle 1: Creation --------------------------------------------------------


class TestCreate:
    """Verify materializing a kernel subtree."""

    def test_layout(self, tmp_path: Path) -> None:
        """Creating a kernel should build the queue, storage, logs and tool dirs."""
        kernel = _create(tmp_path)
        assert kernel.path == tmp_path / "concepts" / "Bake"
        for stage in ("inbox", "staging", "ready", "archive"):
            assert kernel.queue_dir(stage).is_dir()
        assert kernel.storage_dir.is_dir()
        assert kernel.logs_dir.is_dir()
        assert kernel.tool_dir.is_dir()
        assert kernel.config_path.is_file()

    def test_create_twice_raises(self, tmp_path: Path) -> None:
        """A second create for the same name should raise."""
        _create(tmp_path)
        with pytest.raises(KernelExistsError):
            _create(tmp_path)

    def test_invalid_name_rejected(self, tmp_path: Path) -> None:
        """A name that cannot form a URN should be refused."""
        with pytest.raises(InvalidFormatError):
            _create(tmp_path, name="9Lives")
        assert not kernel_dir(tmp_path, "9Lives").exists()

    def test_state_file_paths(self, tmp_path: Path) -> None:
        """Process-state files live at fixed places in the subtree."""
        kernel = _create(tmp_path)
        assert kernel.tool_state_path == kernel.path / ".tool.pid"
        assert kernel.governor_state_path == kernel.path / "tool" / ".governor.pid"
        assert kernel.tx_log == kernel.path / "tx.jsonl"


# -- Cycle 2: Configuration ---------------------------------------------------


class TestConfig:
    """Verify conceptkernel.yaml handling."""

    def test_round_trip(self, tmp_path: Path) -> None:
        """A created kernel should load back with the same config."""
        created = _create(
            tmp_path,
            kind=KernelKind.HOT,
            governor="python -m governor",
            allowed_edges=(EDGE,),
        )
        loaded = Kernel.load(tmp_path, "Bake")
        assert loaded.config == created.config
        assert loaded.kind is KernelKind.HOT

    def test_load_by_urn(self, tmp_path: Path) -> None:
        """Loading should accept a kernel URN as well as a bare name."""
        _create(tmp_path)
        assert Kernel.load(tmp_path, "ckp://Bake:v1").name == "Bake"

    def test_yaml_document_shape(self, tmp_path: Path) -> None:
        """The written YAML should carry the URN and the type string."""
        kernel = _create(tmp_path, kind=KernelKind.HOT)
        data = yaml.safe_load(kernel.config_path.read_text())
        assert data["metadata"]["name"] == "ckp://Bake:v1"
        assert data["metadata"]["type"] == "python:hot"
        assert "spec" not in data

    def test_missing_kernel_raises(self, tmp_path: Path) -> None:
        """Loading an absent kernel should raise KernelNotFoundError."""
        with pytest.raises(KernelNotFoundError):
            Kernel.load(tmp_path, "Ghost")

    def test_name_mismatch_raises(self, tmp_path: Path) -> None:
        """A config naming another kernel should be rejected."""
        kernel = _create(tmp_path)
        kernel.config_path.write_text("metadata:\n  name: ckp://Mix:v1\n")
        with pytest.raises(InvalidFormatError, match="expected Bake"):
            Kernel.load(tmp_path, "Bake")

    def test_bad_type_raises(self, tmp_path: Path) -> None:
        """The type must end in ':hot' or ':cold'."""
        kernel = _create(tmp_path)
        kernel.config_path.write_text("metadata:\n  name: ckp://Bake:v1\n  type: python:warm\n")
        with pytest.raises(InvalidFormatError, match="hot"):
            Kernel.load(tmp_path, "Bake")

    def test_unparseable_yaml_raises(self, tmp_path: Path) -> None:
        """Broken YAML should surface as InvalidFormatError."""
        kernel = _create(tmp_path)
        kernel.config_path.write_text("metadata: [unclosed\n")
        with pytest.raises(InvalidFormatError):
            Kernel.load(tmp_path, "Bake")

    def test_defaults_when_type_missing(self) -> None:
        """A minimal document should give a cold python kernel."""
        config = KernelConfig.from_dict({"metadata": {"name": "ckp://Bake:v1"}})
        assert config.kind is KernelKind.COLD
        assert config.runtime == "python"
        assert config.entrypoint == "tool/main.py"


# -- Cycle 3: Behaviour -------------------------------------------------------


class TestBehaviour:
    """Verify commands, allowlists and queue statistics."""

    def test_python_tool_command(self, tmp_path: Path) -> None:
        """Python kernels run their entrypoint with this interpreter."""
        kernel = _create(tmp_path)
        assert kernel.tool_command() == [sys.executable, str(kernel.path / "tool/main.py")]

    def test_exec_tool_command(self, tmp_path: Path) -> None:
        """Other runtimes split the entrypoint as a command line."""
        kernel = _create(tmp_path, runtime="exec", entrypoint="sleep 30")
        assert kernel.tool_command() == ["sleep", "30"]

    def test_governor_command(self, tmp_path: Path) -> None:
        """The governor command is split, or None when absent."""
        assert _create(tmp_path).governor_command() is None
        other = _create(tmp_path, name="Mix", governor="watch --fast")
        assert other.governor_command() == ["watch", "--fast"]

    def test_missing_contract_allows_all(self, tmp_path: Path) -> None:
        """Without a queue contract every edge may deliver."""
        kernel = _create(tmp_path)
        assert kernel.config.allowed_edges is None
        assert kernel.allows(EDGE)

    def test_empty_contract_denies_all(self, tmp_path: Path) -> None:
        """An explicit empty edge list admits nothing and survives a reload."""
        _create(tmp_path, allowed_edges=())
        loaded = Kernel.load(tmp_path, "Bake")
        assert loaded.config.allowed_edges == ()
        assert not loaded.allows(EDGE)

    @pytest.mark.parametrize(
        ("pattern", "allowed"),
        [
            ("*", True),
            ("ckp://Edge.PRODUCES.*", True),
            ("ckp://Edge.*-to-Bake:v1", True),
            ("ckp://Edge.NOTIFIES.*", False),
            ("ckp://Edge.*-to-Mix:v1", False),
            ("ckp://Edge.*.*", False),
        ],
    )
    def test_wildcard_patterns(self, tmp_path: Path, pattern: str, allowed: bool) -> None:
        """Entries with one '*' match as prefix*suffix."""
        assert _create(tmp_path, allowed_edges=(pattern,)).allows(EDGE) is allowed

    def test_allowlist_restricts(self, tmp_path: Path) -> None:
        """A non-empty allowlist admits only its entries."""
        kernel = _create(tmp_path, allowed_edges=("ckp://Edge.NOTIFIES.Other-to-Bake:v1",))
        assert not kernel.allows(EDGE)
        kernel.allow_edge(EDGE)
        assert Kernel.load(tmp_path, "Bake").allows(EDGE)

    def test_queue_stats(self, tmp_path: Path) -> None:
        """Edge delivery directories count per entry; hidden files are ignored."""
        kernel = _create(tmp_path)
        delivery = kernel.inbox_dir / "PRODUCES.Mix"
        delivery.mkdir()
        (delivery / "a.inst").mkdir()
        (delivery / "b.inst").mkdir()
        (kernel.inbox_dir / "job.job").write_text("{}")
        (kernel.inbox_dir / ".hidden").write_text("")
        (kernel.queue_dir("ready") / "done.job").write_text("{}")
        assert kernel.queue_stats() == QueueStats(inbox=3, staging=0, ready=1)


class TestListKernels:
    """Verify kernel discovery."""

    def test_sorted_case_insensitively(self, tmp_path: Path) -> None:
        """Kernels should be listed in case-insensitive order."""
        for name in ("beta", "Alpha", "Gamma"):
            _create(tmp_path, name=name)
        assert list_kernels(tmp_path) == ["Alpha", "beta", "Gamma"]

    def test_directories_without_config_skipped(self, tmp_path: Path) -> None:
        """Hidden dirs and dirs without a config are not kernels."""
        _create(tmp_path)
        (tmp_path / "concepts" / ".edges").mkdir()
        (tmp_path / "concepts" / "Stray").mkdir()
        assert list_kernels(tmp_path) == ["Bake"]
        assert (tmp_path / "concepts" / "Bake" / CONFIG_FILE).exists()

    def test_no_concepts_dir(self, tmp_path: Path) -> None:
        """A project without concepts/ has no kernels."""
        assert list_kernels(tmp_path) == []
