"""Shared test fixtures for ctconf tests."""
import subprocess

import pytest

from ctconf.config.store import ConfigStore
from ctconf.core.config import CtconfConfig, set_config
from ctconf.core.errors import ExternalCommandError
from ctconf.models.container import Config, NetworkInterface
from ctconf.services.storage.base import StorageBackend


class FakeStorage(StorageBackend):
    """Storage double recording every call."""

    def __init__(self):
        super().__init__('tank')
        self.calls = []
        self.snapshot_capable = True
        self.can_rollback = True
        self.fail = set()

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise ExternalCommandError(['fake-storage', name], returncode=1, stderr=f"{name} failed")

    def has_feature(self, feature, volid, snapname=None):
        return self.snapshot_capable and bool(volid)

    def snapshot(self, volid, snapname):
        self._record('snapshot', volid, snapname)

    def delete_snapshot(self, volid, snapname):
        self._record('delete_snapshot', volid, snapname)

    def rollback_possible(self, volid, snapname):
        return self.can_rollback

    def rollback(self, volid, snapname):
        self._record('rollback', volid, snapname)


class FakeRuntime:
    """Runtime double: tracks running containers and records commands."""

    def __init__(self, calls=None):
        self.calls = calls if calls is not None else []
        self.running = set()
        self.keep_running = False
        self.pid = 4242
        self.cgroup_paths = {}
        self.cgroup_lookups = []
        self.netns_failures = []

    def is_running(self, vmid):
        return vmid in self.running

    def list_active(self):
        return {vmid: True for vmid in self.running}

    def get_pid(self, vmid):
        return self.pid if vmid in self.running else None

    def get_cgroup_path(self, vmid, controller=None):
        self.cgroup_lookups.append(controller)
        return self.cgroup_paths.get(controller, self.cgroup_paths.get('*'))

    def stop(self, vmid, graceful=True, timeout=None):
        self.calls.append(('stop', vmid, graceful))
        if not self.keep_running:
            self.running.discard(vmid)

    def freeze(self, vmid):
        self.calls.append(('freeze', vmid))

    def unfreeze(self, vmid):
        self.calls.append(('unfreeze', vmid))

    def device_add(self, vmid, host_ifname, guest_ifname):
        self.calls.append(('device_add', host_ifname, guest_ifname))

    def netns_ip(self, vmid, *args):
        self.calls.append(('ip',) + args)
        for failing in self.netns_failures:
            if args[:len(failing)] == failing:
                raise ExternalCommandError(['ip'] + list(args), returncode=2, stderr="RTNETLINK answers: error")

    def get_disk_usage(self, vmid):
        return {'total': 0, 'used': 0, 'avail': 0}


class FakeNetwork:
    """Host network double recording calls into a shared log."""

    def __init__(self, calls):
        self.calls = calls

    def veth_create(self, veth, peer, bridge=None, hwaddr=None, mtu=None):
        self.calls.append(('veth_create', veth, peer, hwaddr))

    def veth_delete(self, veth):
        self.calls.append(('veth_delete', veth))

    def tap_plug(self, iface, bridge, tag=None, firewall=False):
        self.calls.append(('tap_plug', iface, bridge, tag, firewall))

    def tap_unplug(self, iface):
        self.calls.append(('tap_unplug', iface))


class FakeRun:
    """Stand-in for subprocess.run recording command lines."""

    def __init__(self, stdout="", returncode=0):
        self.commands = []
        self.stdout = stdout
        self.returncode = returncode
        self.failing = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        if self.returncode or any(cmd[:len(prefix)] == prefix for prefix in self.failing):
            raise subprocess.CalledProcessError(self.returncode or 1, cmd, output="", stderr="operation failed")
        return subprocess.CompletedProcess(cmd, 0, self.stdout, "")


class FakeGuestSetup:
    def __init__(self, calls):
        self.calls = calls

    def setup_network(self, conf, rootdir):
        self.calls.append(('setup_network', rootdir))


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory."""
    config = CtconfConfig(
        node='testnode',
        config_root=str(tmp_path / "lxc"),
        lock_dir=str(tmp_path / "lock"),
        cgroup_root=str(tmp_path / "cgroup"),
        lock_timeout=1,
        rollback_unlock_timeout=1,
        zfs_pools={'tank': 'tank/data'},
    )
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def store(settings):
    return ConfigStore(settings)


@pytest.fixture
def calls():
    """Shared, ordered log of collaborator calls."""
    return []


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fake_runtime(calls):
    return FakeRuntime(calls)


@pytest.fixture
def fake_network(calls):
    return FakeNetwork(calls)


@pytest.fixture
def fake_guest(calls):
    return FakeGuestSetup(calls)


@pytest.fixture
def basic_config():
    """Live config of a small container with one interface."""
    return Config(
        utsname='ct100',
        memory_limit=512 * 1024 * 1024,
        memsw_limit=1024 * 1024 * 1024,
        volid='tank:subvol-100-disk-0',
        net={
            0: NetworkInterface(
                name='eth0',
                veth_pair='veth100.0',
                hwaddr='AA:BB:CC:DD:EE:01',
                bridge='vmbr0',
                ip='10.0.0.2/24',
                gw='10.0.0.1',
            ),
        },
    )


@pytest.fixture
def container(store, basic_config):
    """Container 100 persisted in the temporary config root."""
    store.create(100, basic_config)
    return 100


@pytest.fixture
def fake_run(monkeypatch):
    """Replace subprocess.run for the duration of a test."""
    runner = FakeRun()
    monkeypatch.setattr(subprocess, "run", runner)
    return runner
