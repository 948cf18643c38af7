"""Tests for the server lifecycle: provisioning, guaranteed teardown, cleanup from state."""

import asyncio
import json
import logging

import pytest
from conftest import HETZNER_TOKEN, FakeProvider

from lineage_builder.errors import BuildError, ConfigError, ProvisioningError, StateError
from lineage_builder.provisioning.cloud import (
    cleanup_from_state,
    provision_instance,
    provisioned_instance,
    teardown_instance,
)
from lineage_builder.provisioning.state import ServerState, load_server_state, save_server_state


# ── provision_instance ────────────────────────────────────────────


async def test_provision_instance(fake_provider, make_config):
    config = make_config(server_type="ccx33", server_location="hel1", ssh_port=2222)

    instance = await provision_instance(fake_provider, config)

    name, server_type, image, location, user_data, credential_ids = fake_provider.calls[1][1]
    assert (name, server_type, image, location, user_data) == ("lineageos-builder", "ccx33", "ubuntu-22.04", "hel1", "")
    assert credential_ids == [instance.credential_id]
    assert instance.ip == "203.0.113.10"
    assert instance.ssh_port == 2222
    assert instance.ssh_key is not None
    assert fake_provider.credentials[instance.credential_id].startswith("ssh-ed25519 ")


async def test_provision_instance_injects_debug_keys(fake_provider, make_config):
    instance = await provision_instance(fake_provider, make_config(), debug_keys=["ssh-ed25519 AAAA one", "ssh-rsa BBBB two"])

    assert len(instance.extra_credential_ids) == 2
    _, args = next(c for c in fake_provider.calls if c[0] == "create_instance")
    assert args[-1] == [instance.credential_id, *instance.extra_credential_ids]


async def test_provision_instance_reads_user_data(fake_provider, make_config, tmp_path):
    user_data = tmp_path / "cloud-init.yaml"
    user_data.write_text("#cloud-config\npackages: [git]\n")

    await provision_instance(fake_provider, make_config(server_user_data_path=str(user_data)))

    _, args = next(c for c in fake_provider.calls if c[0] == "create_instance")
    assert args[4] == "#cloud-config\npackages: [git]\n"


async def test_provision_instance_missing_user_data(fake_provider, make_config, tmp_path):
    with pytest.raises(ConfigError):
        await provision_instance(fake_provider, make_config(server_user_data_path=str(tmp_path / "missing.yaml")))
    assert fake_provider.calls == []


async def test_failed_server_creation_deletes_keys(fake_provider, make_config):
    fake_provider.fail_create_instance = ProvisioningError("resource_unavailable")

    with pytest.raises(ProvisioningError, match="resource_unavailable"):
        await provision_instance(fake_provider, make_config(), debug_keys=["ssh-ed25519 AAAA one"])

    assert fake_provider.count("create_credential") == 2
    assert fake_provider.count("delete_credential") == 2
    assert fake_provider.credentials == {}


async def test_cancelled_server_creation_deletes_keys(fake_provider, make_config):
    fake_provider.fail_create_instance = asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await provision_instance(fake_provider, make_config())

    assert fake_provider.credentials == {}


class _CancelledOnThirdKey(FakeProvider):
    async def create_credential(self, name, public_key):
        if self.count("create_credential") == 2:
            self.calls.append(("create_credential", (name, public_key)))
            raise asyncio.CancelledError()
        return await super().create_credential(name, public_key)


async def test_cancelled_debug_key_registration_deletes_created_keys(make_config):
    provider = _CancelledOnThirdKey()

    with pytest.raises(asyncio.CancelledError):
        await provision_instance(provider, make_config(), debug_keys=["ssh-ed25519 AAAA one", "ssh-rsa BBBB two"])

    assert provider.count("create_credential") == 3
    assert provider.count("delete_credential") == 2
    assert provider.credentials == {}
    assert provider.count("create_instance") == 0


# ── provisioned_instance ──────────────────────────────────────────


async def test_success_tears_down_and_removes_state(fake_provider, make_config):
    config = make_config()

    async with provisioned_instance(fake_provider, config) as instance:
        state = load_server_state(config.server_state_file)
        assert state.server_id == instance.id
        assert state.provider_token == HETZNER_TOKEN

    assert fake_provider.count("delete_instance") == 1
    assert fake_provider.servers == {}
    assert fake_provider.credentials == {}
    assert load_server_state(config.server_state_file) is None


async def test_failure_tears_down_and_propagates(fake_provider, make_config):
    config = make_config()

    with pytest.raises(BuildError, match="exit 2"):
        async with provisioned_instance(fake_provider, config):
            raise BuildError("exit 2")

    assert fake_provider.count("delete_instance") == 1
    assert fake_provider.servers == {}
    assert load_server_state(config.server_state_file) is None


async def test_failure_with_keep_leaves_server(fake_provider, make_config, caplog):
    config = make_config(keep_server_on_failure=True)

    with caplog.at_level(logging.WARNING):
        with pytest.raises(BuildError):
            async with provisioned_instance(fake_provider, config, debug_keys=["ssh-ed25519 AAAA one"]) as instance:
                raise BuildError("exit 2")

    assert fake_provider.count("delete_instance") == 0
    assert fake_provider.count("delete_credential") == 0
    assert instance.id in fake_provider.servers
    assert load_server_state(config.server_state_file).server_id == instance.id
    assert "203.0.113.10" in caplog.text
    assert f"id={instance.id}" in caplog.text
    assert f"SSH keys: {instance.credential_id}, {instance.extra_credential_ids[0]} (left registered)" in caplog.text
    assert "lineage-builder cleanup" in caplog.text


async def test_cancellation_ignores_keep_flag(fake_provider, make_config):
    config = make_config(keep_server_on_failure=True)

    with pytest.raises(asyncio.CancelledError):
        async with provisioned_instance(fake_provider, config):
            raise asyncio.CancelledError()

    assert fake_provider.count("delete_instance") == 1
    assert fake_provider.servers == {}


async def test_teardown_failure_after_success_is_raised(fake_provider, make_config):
    config = make_config()
    fake_provider.fail_delete_instance = ProvisioningError("locked")

    with pytest.raises(ProvisioningError, match="locked"):
        async with provisioned_instance(fake_provider, config):
            pass

    assert load_server_state(config.server_state_file) is not None
    assert fake_provider.credentials == {}


async def test_teardown_failure_does_not_mask_build_failure(fake_provider, make_config):
    config = make_config()
    fake_provider.fail_delete_instance = ProvisioningError("locked")

    with pytest.raises(BuildError, match="exit 2"):
        async with provisioned_instance(fake_provider, config):
            raise BuildError("exit 2")

    assert load_server_state(config.server_state_file) is not None


async def test_state_save_failure_is_not_fatal(fake_provider, make_config, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    config = make_config(server_state_file=str(blocker / "state.json"))

    async with provisioned_instance(fake_provider, config):
        pass

    assert fake_provider.count("delete_instance") == 1


async def test_teardown_of_vanished_server(fake_provider, make_config):
    instance = await provision_instance(fake_provider, make_config())
    fake_provider.servers.clear()

    await teardown_instance(fake_provider, instance)

    assert fake_provider.count("delete_instance") == 1
    assert fake_provider.credentials == {}


# ── cleanup_from_state ────────────────────────────────────────────


async def _saved_state(provider, config):
    instance = await provision_instance(provider, config)
    save_server_state(config.server_state_file, ServerState.from_instance(instance, HETZNER_TOKEN))
    return instance


async def test_cleanup_deletes_recorded_server(fake_provider, make_config):
    config = make_config()
    instance = await _saved_state(fake_provider, config)
    tokens = []

    def _factory(token):
        tokens.append(token)
        return fake_provider

    assert await cleanup_from_state(config.server_state_file, provider_factory=_factory) is True

    assert tokens == [HETZNER_TOKEN]
    assert instance.id not in fake_provider.servers
    assert fake_provider.credentials == {}
    assert load_server_state(config.server_state_file) is None


async def test_cleanup_without_state_file(tmp_path):
    provider = FakeProvider()
    assert await cleanup_from_state(str(tmp_path / "missing.json"), provider_factory=lambda token: provider) is False
    assert provider.calls == []


async def test_cleanup_of_vanished_server_removes_state(fake_provider, make_config):
    config = make_config()
    await _saved_state(fake_provider, config)
    fake_provider.servers.clear()

    assert await cleanup_from_state(config.server_state_file, provider_factory=lambda token: fake_provider) is True

    assert fake_provider.count("delete_instance") == 0
    assert load_server_state(config.server_state_file) is None


async def test_cleanup_without_token(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"server_id": 42}))
    with pytest.raises(StateError, match="no provider token"):
        await cleanup_from_state(str(path), provider_factory=lambda token: FakeProvider())


async def test_cleanup_delete_failure_keeps_state(fake_provider, make_config):
    config = make_config()
    await _saved_state(fake_provider, config)
    fake_provider.fail_delete_instance = ProvisioningError("locked")

    with pytest.raises(ProvisioningError):
        await cleanup_from_state(config.server_state_file, provider_factory=lambda token: fake_provider)

    assert load_server_state(config.server_state_file) is not None
