"""Host provisioner: Linux system accounts plus OpenVPN profiles.

The OpenVPN server authenticates ``auth-user-pass`` clients against local
system users (PAM plugin), so the credential for an account is a locked-down
system user in the VPN group. Commands run as argument vectors, never through
a shell.

Account names allow upper-case letters and leading digits, which stock
``useradd`` rejects; such names are created with ``--badname`` (shadow-utils
4.9 and later). Hosts with an older ``useradd`` should set
``HOST_ALLOW_BAD_NAMES=false`` and keep names lower-case.
"""
import asyncio
import logging
import re
from typing import Optional, Sequence

from grantkeeper.domain.interfaces import ResourceProvisioner
from grantkeeper.domain.errors import ProvisionerError
from grantkeeper.adapters.provisioning.profile import ProfileWriter

logger = logging.getLogger(__name__)

NOLOGIN_SHELL = "/usr/sbin/nologin"
# useradd's default NAME_REGEX
PORTABLE_NAME = re.compile(r"^[a-z_][a-z0-9_-]*$")
USERADD_USER_EXISTS = 9
USERDEL_NO_SUCH_USER = 6


class CommandFailed(Exception):
    def __init__(self, argv: Sequence[str], returncode: int, stderr: str):
        super().__init__(f"{argv[0]} exited with {returncode}: {stderr.strip()}")
        self.returncode = returncode


class HostProvisioner(ResourceProvisioner):
    def __init__(
        self,
        profiles: ProfileWriter,
        group: str = "vpnusers",
        timeout_seconds: int = 30,
        allow_bad_names: bool = True,
    ):
        self.profiles = profiles
        self.group = group
        self.timeout = timeout_seconds
        self.allow_bad_names = allow_bad_names

    async def _run(self, *argv: str, stdin: Optional[str] = None) -> str:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin.encode() if stdin is not None else None),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandFailed(argv, -1, "timed out")
        if proc.returncode != 0:
            raise CommandFailed(argv, proc.returncode, stderr.decode(errors="replace"))
        return stdout.decode(errors="replace")

    async def create_credential(self, name: str, secret: str) -> str:
        try:
            await self._run("groupadd", "-f", self.group)
            created = await self._add_user(name)
        except (CommandFailed, OSError) as e:
            logger.error(f"Failed to create system user {name}: {e}")
            raise ProvisionerError("create_credential", name, str(e)) from e

        try:
            # Secret goes over stdin so it never shows up in the process table
            await self._run("chpasswd", stdin=f"{name}:{secret}\n")
        except (CommandFailed, OSError) as e:
            logger.error(f"Failed to set password for system user {name}: {e}")
            if created:
                await self._remove_user(name)
            raise ProvisionerError("create_credential", name, str(e)) from e

        logger.info(f"Created system user: {name}")
        return f"system:{name}"

    async def _add_user(self, name: str) -> bool:
        """Create the user. Returns False when a VPN user of that name already existed."""
        argv = ["useradd", "--no-create-home", "--shell", NOLOGIN_SHELL, "--comment", "VPN User", "-G", self.group]
        if self.allow_bad_names and not PORTABLE_NAME.match(name):
            argv.append("--badname")
        argv.append(name)
        try:
            await self._run(*argv)
            return True
        except CommandFailed as e:
            # Left over from an interrupted create; never adopt users outside the VPN group
            if e.returncode == USERADD_USER_EXISTS and await self._in_vpn_group(name):
                logger.warning(f"System user {name} already exists in {self.group}, reusing it")
                return False
            raise

    async def _in_vpn_group(self, name: str) -> bool:
        try:
            groups = await self._run("id", "-nG", name)
        except (CommandFailed, OSError):
            return False
        return self.group in groups.split()

    async def _remove_user(self, name: str) -> bool:
        try:
            await self._run("userdel", name)
        except CommandFailed as e:
            if e.returncode == USERDEL_NO_SUCH_USER:
                logger.info(f"System user {name} already absent")
                return True
            logger.error(f"Failed to delete system user {name}: {e}")
            return False
        except OSError as e:
            logger.error(f"Failed to delete system user {name}: {e}")
            return False
        logger.info(f"Deleted system user: {name}")
        return True

    async def delete_credential(self, name: str) -> bool:
        return await self._remove_user(name)

    async def enable_credential(self, name: str) -> bool:
        return await self._set_locked(name, locked=False)

    async def disable_credential(self, name: str) -> bool:
        return await self._set_locked(name, locked=True)

    async def _set_locked(self, name: str, locked: bool) -> bool:
        try:
            await self._run("usermod", "-L" if locked else "-U", name)
        except (CommandFailed, OSError) as e:
            logger.error(f"Failed to {'disable' if locked else 'enable'} system user {name}: {e}")
            return False
        logger.info(f"{'Disabled' if locked else 'Enabled'} system user: {name}")
        return True

    async def generate_profile(self, name: str) -> str:
        return await self.profiles.generate(name)

    async def cleanup_artifacts(self, name: str) -> bool:
        return await self.profiles.cleanup(name)
