"""Tests for cgroup v1/v2 access."""
import os

import pytest

from ctconf.core.errors import CGroupModeError, InconsistentError, InvalidValueError
from ctconf.services.lxc.cgroup import (
    CGroup,
    CGroupEnvironment,
    CGroupMode,
    parse_flat_keyed,
    parse_nested_keyed,
)


class RecordingCGroup(CGroup):
    """CGroup that records writes instead of touching the filesystem."""

    def __init__(self, *args, values=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.values = values or {}
        self.writes = []

    def _read_value(self, path):
        return self.values[path.name]

    def _write_value(self, path, value):
        self.writes.append((path.name, str(value)))


def make_cgroup(tmp_path, fake_runtime, mode, values=None):
    env = CGroupEnvironment(cgroup_root=str(tmp_path / "cgroup"), mode=mode)
    fake_runtime.cgroup_paths['*'] = '/lxc/100'
    return RecordingCGroup(100, fake_runtime, env, values=values)


def write_file(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)


class TestParsers:
    def test_flat_keyed(self):
        data = "user_usec 1500\nsystem_usec 2500\n\n"
        assert parse_flat_keyed(data) == {'user_usec': '1500', 'system_usec': '2500'}

    def test_nested_keyed(self):
        data = "8:0 rbytes=100 wbytes=200 rios=1\n8:16 rbytes=5 wbytes=6\n"
        result = parse_nested_keyed(data)
        assert result['8:0'] == {'rbytes': '100', 'wbytes': '200', 'rios': '1'}
        assert result['8:16']['wbytes'] == '6'

    def test_nested_keyed_skips_bad_pairs(self):
        assert parse_nested_keyed("8:0 rbytes=1 junk\n") == {'8:0': {'rbytes': '1'}}


class TestEnvironment:
    """Test cgroup mode detection."""

    def test_legacy_mode(self, tmp_path):
        write_file(tmp_path / "proc/self/cgroup",
                   "12:memory:/user.slice\n11:cpu,cpuacct:/\n1:name=systemd:/init.scope\n0::/init.scope\n")
        env = CGroupEnvironment(str(tmp_path / "cgroup"), str(tmp_path / "proc"))
        assert env.mode == CGroupMode.LEGACY

    def test_unified_mode(self, tmp_path):
        write_file(tmp_path / "proc/self/cgroup", "0::/init.scope\n")
        env = CGroupEnvironment(str(tmp_path / "cgroup"), str(tmp_path / "proc"))
        assert env.mode == CGroupMode.UNIFIED

    def test_unified_by_controllers_file(self, tmp_path):
        write_file(tmp_path / "cgroup/cgroup.controllers", "cpu io memory\n")
        env = CGroupEnvironment(str(tmp_path / "cgroup"), str(tmp_path / "proc"))
        assert env.mode == CGroupMode.UNIFIED

    def test_unknown_mode(self, tmp_path):
        env = CGroupEnvironment(str(tmp_path / "cgroup"), str(tmp_path / "proc"))
        with pytest.raises(CGroupModeError):
            env.mode

    def test_cpuset_path_hybrid(self, tmp_path):
        write_file(tmp_path / "cgroup/unified/cpuset.cpus.effective", "0-3\n")
        env = CGroupEnvironment(str(tmp_path / "cgroup"), mode=CGroupMode.LEGACY)
        assert env.cpuset_controller_path == tmp_path / "cgroup" / "unified"

    def test_cpuset_path_missing(self, tmp_path):
        env = CGroupEnvironment(str(tmp_path / "cgroup"), mode=CGroupMode.UNIFIED)
        with pytest.raises(CGroupModeError):
            env.cpuset_controller_path


class TestPaths:
    def test_unified_path(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)
        assert cgroup.get_path('memory') == tmp_path / "cgroup" / "lxc" / "100"

    def test_legacy_controller_path(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.LEGACY)
        assert cgroup.get_path('memory') == tmp_path / "cgroup" / "memory" / "lxc" / "100"
        assert cgroup.get_path(None) == tmp_path / "cgroup" / "unified" / "lxc" / "100"

    def test_subdir_cached(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)
        cgroup.get_path('cpu')
        cgroup.get_path('cpu')
        assert fake_runtime.cgroup_lookups == ['cpu']

    def test_suspicious_path(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)
        fake_runtime.cgroup_paths['*'] = '/lxc/../../etc'
        with pytest.raises(InconsistentError):
            cgroup.get_path('memory')

    def test_stopped_container_has_no_path(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)
        fake_runtime.cgroup_paths.clear()
        assert cgroup.get_path('memory') is None


class TestReads:
    """Test statistics collection from real files."""

    def test_unified_stats(self, tmp_path, fake_runtime):
        base = tmp_path / "cgroup" / "lxc" / "100"
        write_file(base / "io.stat", "8:0 rbytes=100 wbytes=200\n8:16 rbytes=1 wbytes=2\n")
        write_file(base / "cpu.stat", "usage_usec 9000\nuser_usec 5000\nsystem_usec 3000\n")
        write_file(base / "memory.current", "4096\n")
        write_file(base / "memory.swap.current", "1024\n")
        env = CGroupEnvironment(str(tmp_path / "cgroup"), mode=CGroupMode.UNIFIED)
        fake_runtime.cgroup_paths['*'] = 'lxc/100'
        cgroup = CGroup(100, fake_runtime, env)

        assert cgroup.get_io_stats() == {'diskread': 101, 'diskwrite': 202}
        assert cgroup.get_cpu_stat() == {'utime': 5, 'stime': 3}
        assert cgroup.get_memory_stat() == {'mem': 4096, 'swap': 1024}

    def test_unified_memory_without_swap_accounting(self, tmp_path, fake_runtime):
        write_file(tmp_path / "cgroup" / "lxc" / "100" / "memory.current", "4096\n")
        env = CGroupEnvironment(str(tmp_path / "cgroup"), mode=CGroupMode.UNIFIED)
        fake_runtime.cgroup_paths['*'] = 'lxc/100'
        cgroup = CGroup(100, fake_runtime, env)

        assert cgroup.get_memory_stat() == {'mem': 4096, 'swap': 0}

    def test_legacy_stats(self, tmp_path, fake_runtime):
        root = tmp_path / "cgroup"
        write_file(root / "blkio/lxc/100/blkio.throttle.io_service_bytes_recursive",
                   "8:0 Read 100\n8:0 Write 50\n8:0 Sync 150\n8:0 Total 150\nTotal 150\n")
        write_file(root / "memory/lxc/100/memory.stat", "cache 10\ntotal_cache 100\n")
        write_file(root / "memory/lxc/100/memory.usage_in_bytes", "1000\n")
        write_file(root / "memory/lxc/100/memory.memsw.usage_in_bytes", "1500\n")
        hz = os.sysconf('SC_CLK_TCK')
        write_file(root / "cpuacct/lxc/100/cpuacct.stat", f"user {hz * 2}\nsystem {hz}\n")
        env = CGroupEnvironment(str(root), mode=CGroupMode.LEGACY)
        fake_runtime.cgroup_paths['*'] = 'lxc/100'
        cgroup = CGroup(100, fake_runtime, env)

        assert cgroup.get_io_stats() == {'diskread': 100, 'diskwrite': 50}
        assert cgroup.get_cpu_stat() == {'utime': 2000, 'stime': 1000}
        assert cgroup.get_memory_stat() == {'mem': 900, 'swap': 500}

    def test_stopped_container_reads_zero(self, tmp_path, fake_runtime):
        env = CGroupEnvironment(str(tmp_path / "cgroup"), mode=CGroupMode.UNIFIED)
        cgroup = CGroup(100, fake_runtime, env)

        assert cgroup.get_io_stats() == {'diskread': 0, 'diskwrite': 0}
        assert cgroup.get_cpu_stat() == {'utime': 0, 'stime': 0}
        assert cgroup.get_memory_stat() == {'mem': 0, 'swap': 0}


class TestMemoryLimit:
    """Test write ordering of memory and swap ceilings."""

    def test_unified_writes_swap_then_memory(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)

        cgroup.change_memory_limit(512 * 1024 * 1024, 256 * 1024 * 1024)

        assert cgroup.writes == [
            ('memory.swap.max', str(256 * 1024 * 1024)),
            ('memory.max', str(512 * 1024 * 1024)),
        ]

    def test_unified_memory_only(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)

        cgroup.change_memory_limit(mem_bytes=1024)

        assert cgroup.writes == [('memory.max', '1024')]

    def test_legacy_growing_writes_memsw_first(self, tmp_path, fake_runtime):
        values = {'memory.limit_in_bytes': '1000', 'memory.memsw.limit_in_bytes': '1500'}
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.LEGACY, values)

        cgroup.change_memory_limit(2000, 1000)

        assert cgroup.writes == [
            ('memory.memsw.limit_in_bytes', '3000'),
            ('memory.limit_in_bytes', '2000'),
        ]

    def test_legacy_shrinking_writes_memory_first(self, tmp_path, fake_runtime):
        values = {'memory.limit_in_bytes': '2000', 'memory.memsw.limit_in_bytes': '3000'}
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.LEGACY, values)

        cgroup.change_memory_limit(500, 500)

        assert cgroup.writes == [
            ('memory.limit_in_bytes', '500'),
            ('memory.memsw.limit_in_bytes', '1000'),
        ]

    @pytest.mark.parametrize("mem,expected", [
        (200, [('memory.memsw.limit_in_bytes', '250'), ('memory.limit_in_bytes', '200')]),
        (50, [('memory.limit_in_bytes', '50'), ('memory.memsw.limit_in_bytes', '100')]),
    ])
    def test_legacy_order_with_unchanged_swap(self, tmp_path, fake_runtime, mem, expected):
        values = {'memory.limit_in_bytes': '100', 'memory.memsw.limit_in_bytes': '150'}
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.LEGACY, values)

        cgroup.change_memory_limit(mem, 50)

        assert cgroup.writes == expected

    def test_legacy_keeps_current_memsw(self, tmp_path, fake_runtime):
        values = {'memory.limit_in_bytes': '2000', 'memory.memsw.limit_in_bytes': '3000'}
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.LEGACY, values)

        cgroup.change_memory_limit(mem_bytes=1000)

        assert cgroup.writes == [
            ('memory.limit_in_bytes', '1000'),
            ('memory.memsw.limit_in_bytes', '3000'),
        ]

    def test_not_running(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)
        fake_runtime.cgroup_paths.clear()

        with pytest.raises(InconsistentError, match="not running"):
            cgroup.change_memory_limit(1024, 0)
        assert cgroup.writes == []


class TestCpu:
    def test_unified_quota(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)

        cgroup.change_cpu_quota(150000, 100000)
        cgroup.change_cpu_quota(None, 100000)
        cgroup.change_cpu_quota(None, None)

        assert cgroup.writes == [
            ('cpu.max', '150000 100000'),
            ('cpu.max', 'max 100000'),
            ('cpu.max', 'max'),
        ]

    def test_legacy_quota(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.LEGACY)

        cgroup.change_cpu_quota(50000, 100000)
        cgroup.change_cpu_quota(None, None)

        assert cgroup.writes == [
            ('cpu.cfs_period_us', '100000'),
            ('cpu.cfs_quota_us', '50000'),
            ('cpu.cfs_period_us', '-1'),
            ('cpu.cfs_quota_us', '-1'),
        ]

    def test_quota_without_period(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)

        with pytest.raises(InvalidValueError):
            cgroup.change_cpu_quota(50000, None)
        assert cgroup.writes == []

    def test_unified_weight(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)

        cgroup.change_cpu_shares(500)
        cgroup.change_cpu_shares(None)

        assert cgroup.writes == [('cpu.weight', '500'), ('cpu.weight', '100')]

    @pytest.mark.parametrize("weight", [0, 10001])
    def test_unified_weight_out_of_range(self, tmp_path, fake_runtime, weight):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.UNIFIED)

        with pytest.raises(InvalidValueError):
            cgroup.change_cpu_shares(weight)

    def test_legacy_shares(self, tmp_path, fake_runtime):
        cgroup = make_cgroup(tmp_path, fake_runtime, CGroupMode.LEGACY)

        cgroup.change_cpu_shares(2048)
        cgroup.change_cpu_shares(None)
        cgroup.change_cpu_shares(None, legacy_default=100)

        assert cgroup.writes == [
            ('cpu.shares', '2048'),
            ('cpu.shares', '1024'),
            ('cpu.shares', '100'),
        ]
