"""Tests for port allocation.

Each registered project owns a slot, and each slot a fixed block of
ports.  The block is a pure function of the slot, so projects can never
collide.  Inside its block a project assigns ports to hot kernels
through a ``.ckports`` map.

Key properties:
    - The protocol constants are pinned: changing one breaks every
      deployed project's addressing.
    - Ranges of distinct slots are disjoint.
    - The discovery port is never handed to a kernel.
"""

from pathlib import Path

import pytest

from py_ckp.errors import InvalidFormatError, PortUnavailableError
from py_ckp.ports import (
    BASE_PORT,
    DISCOVERY_OFFSET,
    MAX_SLOT,
    PORT_MAP_FILE,
    PORT_RANGE_SIZE,
    PortMap,
    PortRange,
    discovery_port,
    range_for,
)

EXPECTED_BASE_PORT = 56000
EXPECTED_RANGE_SIZE = 200
EXPECTED_DISCOVERY_OFFSET = 43
EXPECTED_MAX_SLOT = 47


def _always_free(_port: int) -> bool:
    """Pretend every port is bindable."""
    return True


def _small_map(root: Path, size: int = 4) -> PortMap:
    """Create a port map over a tiny range starting at the base port."""
    return PortMap(root, PortRange(BASE_PORT, BASE_PORT + size - 1), is_free=_always_free)


# -- Cycle 1: Contract constants ----------------------------------------------


class TestContractConstants:
    """Pin the addressing constants shared by every project on a host."""

    def test_base_port(self) -> None:
        """The first slot starts at 56000."""
        assert BASE_PORT == EXPECTED_BASE_PORT

    def test_range_size(self) -> None:
        """Each slot spans 200 ports."""
        assert PORT_RANGE_SIZE == EXPECTED_RANGE_SIZE

    def test_discovery_offset(self) -> None:
        """The discovery port sits 43 ports into the range."""
        assert DISCOVERY_OFFSET == EXPECTED_DISCOVERY_OFFSET

    def test_max_slot(self) -> None:
        """The last slot still ends below 65536."""
        assert MAX_SLOT == EXPECTED_MAX_SLOT
        assert range_for(MAX_SLOT).end <= 65535


# -- Cycle 2: Slot ranges -----------------------------------------------------


class TestRangeFor:
    """Verify slot to range mapping."""

    def test_first_slot(self) -> None:
        """Slot 1 should be 56000-56199 with discovery 56043."""
        assert range_for(1) == PortRange(56000, 56199)
        assert discovery_port(1) == 56043

    def test_second_slot(self) -> None:
        """Slot 2 should start right after slot 1."""
        assert range_for(2) == PortRange(56200, 56399)
        assert discovery_port(2) == 56243

    def test_ranges_are_disjoint(self) -> None:
        """No two slots may share a port."""
        ranges = [range_for(slot) for slot in range(1, MAX_SLOT + 1)]
        for i, first in enumerate(ranges):
            for second in ranges[i + 1 :]:
                assert not first.overlaps(second)

    def test_ranges_have_fixed_size(self) -> None:
        """Every range holds exactly PORT_RANGE_SIZE ports."""
        assert all(len(range_for(slot)) == PORT_RANGE_SIZE for slot in (1, 10, MAX_SLOT))

    @pytest.mark.parametrize("slot", [0, -1, MAX_SLOT + 1])
    def test_out_of_range_slots(self, slot: int) -> None:
        """Slots outside 1..MAX_SLOT should raise ValueError."""
        with pytest.raises(ValueError, match="outside"):
            range_for(slot)

    def test_range_membership(self) -> None:
        """Membership should be inclusive at both ends."""
        block = range_for(1)
        assert 56000 in block
        assert 56199 in block
        assert 56200 not in block
        assert "56000" not in block


# -- Cycle 3: Per-project port map --------------------------------------------


class TestPortMap:
    """Verify per-project port assignment."""

    def test_allocate_skips_discovery_port(self, tmp_path: Path) -> None:
        """The discovery port is reserved even inside the range."""
        port_range = range_for(1)
        ports = PortMap(tmp_path, port_range, is_free=_always_free)
        ports.load()
        assigned = {ports.allocate(f"K{i}", preferred_offset=DISCOVERY_OFFSET) for i in range(3)}
        assert ports.reserved not in assigned

    def test_allocate_reuses_existing(self, tmp_path: Path) -> None:
        """Allocating twice for one kernel returns the same port."""
        ports = _small_map(tmp_path)
        first = ports.allocate("Gateway")
        assert ports.allocate("Gateway") == first

    def test_allocations_persist(self, tmp_path: Path) -> None:
        """A fresh map over the same project should see earlier allocations."""
        _small_map(tmp_path).allocate("Gateway")
        reloaded = _small_map(tmp_path)
        reloaded.load()
        assert reloaded.get("Gateway") == BASE_PORT
        assert (tmp_path / PORT_MAP_FILE).exists()

    def test_busy_ports_are_skipped(self, tmp_path: Path) -> None:
        """A port that fails the bind probe is not assigned."""
        ports = PortMap(
            tmp_path, PortRange(BASE_PORT, BASE_PORT + 3), is_free=lambda p: p != BASE_PORT
        )
        assert ports.allocate("Gateway") == BASE_PORT + 1

    def test_exhausted_range_raises(self, tmp_path: Path) -> None:
        """When every port is taken allocation should fail."""
        ports = _small_map(tmp_path, size=2)
        ports.allocate("A")
        ports.allocate("B")
        with pytest.raises(PortUnavailableError):
            ports.allocate("C")

    def test_release_frees_port(self, tmp_path: Path) -> None:
        """A released port can be assigned to another kernel."""
        ports = _small_map(tmp_path, size=1)
        ports.allocate("A")
        assert ports.release("A")
        assert not ports.release("A")
        assert ports.allocate("B") == BASE_PORT

    def test_foreign_entries_dropped(self, tmp_path: Path) -> None:
        """Entries outside the current range are ignored on load."""
        (tmp_path / PORT_MAP_FILE).write_text(
            '{"basePort": 1, "allocations": {"Old": 1234, "Gateway": 56001}}'
        )
        ports = _small_map(tmp_path)
        ports.load()
        assert ports.allocations() == {"Gateway": 56001}

    def test_malformed_map_raises(self, tmp_path: Path) -> None:
        """A corrupt .ckports file should raise InvalidFormatError."""
        (tmp_path / PORT_MAP_FILE).write_text("{not json")
        with pytest.raises(InvalidFormatError):
            _small_map(tmp_path).load()
