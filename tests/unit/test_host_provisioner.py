"""Tests for the host provisioner, with the OS commands mocked out."""
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from grantkeeper.adapters.provisioning.host import HostProvisioner, NOLOGIN_SHELL
from grantkeeper.domain.accounts.orchestrator import AccountOrchestrator
from grantkeeper.domain.errors import ProvisionerError, ProvisioningFailedError
from grantkeeper.domain.models import ProvisioningState

SECRET = "Str0ngPass!"


def fake_process(returncode=0, stdout=b"", stderr=b""):
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


@pytest.fixture
def profiles():
    writer = MagicMock()
    writer.generate = AsyncMock(return_value="/etc/openvpn/clients/alice_01_1.ovpn")
    writer.cleanup = AsyncMock(return_value=True)
    return writer


@pytest.fixture
def provisioner(profiles):
    return HostProvisioner(profiles, group="vpnusers", timeout_seconds=5)


class TestHostProvisioner:
    @pytest.mark.asyncio
    async def test_create_credential_runs_commands_in_order(self, provisioner):
        procs = [fake_process(), fake_process(), fake_process()]
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=procs)) as exec_mock:
            ref = await provisioner.create_credential("alice_01", "Str0ngPass!")

        assert ref == "system:alice_01"
        argvs = [c.args for c in exec_mock.call_args_list]
        assert argvs[0] == ("groupadd", "-f", "vpnusers")
        assert argvs[1][0] == "useradd"
        assert NOLOGIN_SHELL in argvs[1]
        assert argvs[1][-1] == "alice_01"
        assert argvs[2] == ("chpasswd",)
        # The secret travels over stdin, never in argv
        procs[2].communicate.assert_awaited_once_with(b"alice_01:Str0ngPass!\n")
        assert all("Str0ngPass!" not in " ".join(a) for a in argvs)

    @pytest.mark.asyncio
    async def test_create_credential_failure_raises(self, provisioner):
        procs = [
            fake_process(),
            fake_process(returncode=9, stderr=b"useradd: user 'alice_01' already exists"),
            # Existing user is not in the VPN group, so it must not be taken over
            fake_process(stdout=b"alice_01 users\n"),
        ]
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=procs)):
            with pytest.raises(ProvisionerError) as exc:
                await provisioner.create_credential("alice_01", "Str0ngPass!")

        assert exc.value.operation == "create_credential"
        assert "already exists" in exc.value.reason

    @pytest.mark.asyncio
    async def test_missing_binary_raises(self, provisioner):
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("groupadd"))):
            with pytest.raises(ProvisionerError):
                await provisioner.create_credential("alice_01", "Str0ngPass!")

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self, provisioner):
        proc = fake_process()
        proc.communicate = AsyncMock(side_effect=asyncio.TimeoutError)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            assert await provisioner.delete_credential("alice_01") is False

        proc.kill.assert_called_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,flag", [("enable_credential", "-U"), ("disable_credential", "-L")])
    async def test_toggle_uses_usermod(self, provisioner, method, flag):
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process())) as exec_mock:
            assert await getattr(provisioner, method)("alice_01") is True

        exec_mock.assert_awaited_once()
        assert exec_mock.call_args.args == ("usermod", flag, "alice_01")

    @pytest.mark.asyncio
    async def test_toggle_failure_returns_false(self, provisioner):
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process(returncode=6))):
            assert await provisioner.disable_credential("alice_01") is False

    @pytest.mark.asyncio
    async def test_delete_credential(self, provisioner):
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process())) as exec_mock:
            assert await provisioner.delete_credential("alice_01") is True
        assert exec_mock.call_args.args == ("userdel", "alice_01")

    @pytest.mark.asyncio
    async def test_profile_work_is_delegated(self, provisioner, profiles):
        assert await provisioner.generate_profile("alice_01") == "/etc/openvpn/clients/alice_01_1.ovpn"
        assert await provisioner.cleanup_artifacts("alice_01") is True
        profiles.generate.assert_awaited_once_with("alice_01")
        profiles.cleanup.assert_awaited_once_with("alice_01")


class FakeHost:
    """Minimal user database behind useradd, chpasswd, userdel and id."""

    def __init__(self, group="vpnusers"):
        self.group = group
        self.users = {}
        self.failing = set()
        self.argvs = []

    async def exec(self, *argv, **kwargs):
        self.argvs.append(argv)
        command, name = argv[0], argv[-1]
        if command in self.failing:
            self.failing.discard(command)
            return fake_process(returncode=1, stderr=f"{command}: failure".encode())
        if command == "useradd":
            if name in self.users:
                return fake_process(returncode=9, stderr=f"useradd: user '{name}' already exists".encode())
            self.users[name] = [self.group]
        elif command == "userdel":
            if self.users.pop(name, None) is None:
                return fake_process(returncode=6, stderr=f"userdel: user '{name}' does not exist".encode())
        elif command == "id":
            if name not in self.users:
                return fake_process(returncode=1, stderr=b"id: no such user")
            return fake_process(stdout=f"{name} {' '.join(self.users[name])}\n".encode())
        return fake_process()

    def commands(self):
        return [a[0] for a in self.argvs]


@pytest.fixture
def host():
    return FakeHost()


class TestHostRecovery:
    @pytest.mark.asyncio
    async def test_chpasswd_failure_removes_new_user(self, provisioner, host):
        host.failing.add("chpasswd")
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=host.exec)):
            with pytest.raises(ProvisionerError):
                await provisioner.create_credential("alice_01", SECRET)

        assert "alice_01" not in host.users
        assert host.argvs[-1] == ("userdel", "alice_01")

    @pytest.mark.asyncio
    async def test_existing_vpn_user_is_reused(self, provisioner, host):
        host.users["alice_01"] = ["vpnusers"]
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=host.exec)):
            assert await provisioner.create_credential("alice_01", SECRET) == "system:alice_01"

        assert host.commands() == ["groupadd", "useradd", "id", "chpasswd"]

    @pytest.mark.asyncio
    async def test_existing_foreign_user_is_left_alone(self, provisioner, host):
        host.users["alice_01"] = ["alice_01", "sudo"]
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=host.exec)):
            with pytest.raises(ProvisionerError):
                await provisioner.create_credential("alice_01", SECRET)

        assert host.users["alice_01"] == ["alice_01", "sudo"]
        assert "chpasswd" not in host.commands()
        assert "userdel" not in host.commands()

    @pytest.mark.asyncio
    async def test_delete_of_absent_user_counts_as_removed(self, provisioner, host):
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=host.exec)):
            assert await provisioner.delete_credential("alice_01") is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name,allow_bad_names,badname", [
        ("alice_01", True, False),
        ("Alice_01", True, True),
        ("1alice", True, True),
        ("Alice_01", False, False),
    ])
    async def test_badname_only_for_non_portable_names(self, profiles, host, name, allow_bad_names, badname):
        provisioner = HostProvisioner(profiles, allow_bad_names=allow_bad_names)
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=host.exec)):
            await provisioner.create_credential(name, SECRET)

        useradd = next(a for a in host.argvs if a[0] == "useradd")
        assert ("--badname" in useradd) is badname
        assert useradd[-1] == name

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing", [{"chpasswd"}, {"chpasswd", "userdel"}])
    async def test_interrupted_create_can_be_finished_and_deleted(
        self, profiles, host, store, audit, clock, secret_hasher, failing
    ):
        orchestrator = AccountOrchestrator(
            store, HostProvisioner(profiles), audit,
            validity_days=30,
            admin_validity_days=365,
            max_connections=3,
            clock=clock,
            secret_hasher=secret_hasher,
        )
        host.failing.update(failing)

        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=host.exec)):
            with pytest.raises(ProvisioningFailedError) as exc:
                await orchestrator.create(42, "alice_01", SECRET)
            account_id = exc.value.account_id
            assert (await store.find_by_id(account_id)).provisioning_state == ProvisioningState.CREDENTIAL_FAILED

            account = await orchestrator.finish_provisioning(account_id, SECRET)
            assert account.provisioning_state == ProvisioningState.COMPLETE
            assert account.active is True
            assert host.users["alice_01"] == ["vpnusers"]

            assert await orchestrator.delete(account_id, "admin:ops") is True

        assert host.users == {}
        assert await store.find_by_id(account_id) is None

    @pytest.mark.asyncio
    async def test_delete_after_failed_create_removes_leftover_user(
        self, profiles, host, store, audit, clock, secret_hasher
    ):
        orchestrator = AccountOrchestrator(
            store, HostProvisioner(profiles), audit, clock=clock, secret_hasher=secret_hasher
        )
        host.failing.update({"chpasswd", "userdel"})

        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=host.exec)):
            with pytest.raises(ProvisioningFailedError) as exc:
                await orchestrator.create(42, "alice_01", SECRET)
            assert "alice_01" in host.users

            assert await orchestrator.delete(exc.value.account_id, "admin:ops") is True

        assert host.users == {}
