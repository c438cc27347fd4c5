"""Tests for config persistence."""
import os

import pytest

from ctconf.core.errors import DuplicateNameError, NotFoundError
from ctconf.models.container import Config


class TestConfigStore:
    """Test load/write/create/destroy."""

    def test_create_and_load(self, store, basic_config):
        store.create(100, basic_config)

        assert store.exists(100)
        loaded = store.load(100)
        assert loaded == basic_config
        assert loaded.digest is not None

    def test_config_path(self, store, settings):
        assert store.config_file(100) == settings.container_dir(100) / "config"
        assert str(store.config_file(100)).startswith(settings.config_root)

    def test_create_existing_fails(self, store, basic_config):
        store.create(100, basic_config)

        with pytest.raises(DuplicateNameError) as exc_info:
            store.create(100, Config(utsname='other'))
        assert exc_info.value.vmid == 100
        assert store.load(100).utsname == 'ct100'

    def test_load_missing(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            store.load(999)
        assert "999" in str(exc_info.value)

    def test_write_missing_container(self, store):
        with pytest.raises(NotFoundError):
            store.write(999, Config(utsname='x'))

    def test_write_replaces_content(self, store, container):
        conf = store.load(container)
        conf.utsname = 'renamed'
        store.write(container, conf)

        assert store.load(container).utsname == 'renamed'
        leftovers = [name for name in os.listdir(store.config_file(container).parent)
                     if name != 'config']
        assert leftovers == []

    def test_digest_changes_on_write(self, store, container):
        before = store.load(container).digest
        conf = store.load(container)
        conf.utsname = 'renamed'
        store.write(container, conf)

        assert store.load(container).digest != before

    def test_destroy(self, store, container):
        store.destroy(container)

        assert not store.exists(container)
        assert not store.settings.container_dir(container).exists()
        with pytest.raises(NotFoundError):
            store.load(container)

    def test_destroy_missing_is_noop(self, store):
        store.destroy(999)

    def test_config_list(self, store, basic_config):
        for vmid in (105, 100, 101):
            store.create(vmid, Config(utsname=f"ct{vmid}"))
        (store.settings.container_dir(1)).mkdir()  # no config file

        assert store.config_list() == [100, 101, 105]

    def test_config_list_without_root(self, store):
        assert store.config_list() == []

    def test_write_temp_config(self, store, basic_config):
        filename = store.write_temp_config(100, basic_config)
        try:
            with open(filename) as f:
                raw = f.read()
            assert "lxc.utsname = ct100\n" in raw
        finally:
            os.unlink(filename)

    def test_locked_is_reentrant(self, store, container):
        with store.locked(container):
            with store.locked(container):
                conf = store.load(container)
                conf.utsname = 'inside'
                store.write(container, conf)

        assert store.load(container).utsname == 'inside'
