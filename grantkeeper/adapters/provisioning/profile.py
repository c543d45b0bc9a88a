"""OpenVPN client profile generation.

Profiles are rendered from a Jinja2 template with the CA certificate and TLS
auth key embedded inline, and written as ``{name}_{timestamp_ms}.ovpn`` so a
regenerate never overwrites the previous file in place.
"""
import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from jinja2 import Environment, StrictUndefined

from grantkeeper.domain.errors import ProvisionerError

logger = logging.getLogger(__name__)

PROFILE_SUFFIX = ".ovpn"

CLIENT_TEMPLATE = """# OpenVPN Configuration for {{ name }}
# Generated: {{ generated_at }}
# Server: {{ host }}:{{ port }}

client
dev tun
proto {{ protocol }}
remote {{ host }} {{ port }}
resolv-retry infinite
nobind
persist-key
persist-tun
remote-cert-tls server
verb 3
mute 20

# Username/password authentication against the server
auth-user-pass
auth-nocache

auth SHA512
cipher AES-256-GCM
tls-version-min 1.2
key-direction 1

redirect-gateway def1
dhcp-option DNS 1.1.1.1
dhcp-option DNS 1.0.0.1
block-outside-dns
keepalive 10 120

connect-retry 2
connect-retry-max 5
connect-timeout 10

<ca>
{{ ca_cert }}
</ca>
{% if tls_auth %}
<tls-auth>
{{ tls_auth }}
</tls-auth>
{% endif %}
"""


class ProfileWriter:
    def __init__(
        self,
        profile_dir: str,
        host: str,
        port: int,
        protocol: str = "udp",
        ca_cert_path: Optional[str] = None,
        tls_auth_path: Optional[str] = None,
        template: str = CLIENT_TEMPLATE,
    ):
        self.profile_dir = Path(profile_dir)
        self.host = host
        self.port = port
        self.protocol = protocol
        self.ca_cert_path = Path(ca_cert_path) if ca_cert_path else None
        self.tls_auth_path = Path(tls_auth_path) if tls_auth_path else None
        self._template = Environment(undefined=StrictUndefined, keep_trailing_newline=True).from_string(template)

    async def generate(self, name: str) -> str:
        return await asyncio.to_thread(self._write_profile, name)

    async def cleanup(self, name: str) -> bool:
        return await asyncio.to_thread(self._remove_profiles, name)

    def profiles_for(self, name: str):
        if not self.profile_dir.exists():
            return []
        # "bob_*" would also match "bob_x_<ts>", so require a numeric stamp
        pattern = re.compile(rf"^{re.escape(name)}_\d+{re.escape(PROFILE_SUFFIX)}$")
        return sorted(p for p in self.profile_dir.glob(f"{name}_*{PROFILE_SUFFIX}") if pattern.match(p.name))

    def render(self, name: str) -> str:
        ca_cert = self._read_material(self.ca_cert_path, required=True)
        tls_auth = self._read_material(self.tls_auth_path, required=False)
        return self._template.render(
            name=name,
            generated_at=datetime.now(timezone.utc).isoformat(),
            host=self.host,
            port=self.port,
            protocol=self.protocol,
            ca_cert=ca_cert,
            tls_auth=tls_auth,
        )

    def _read_material(self, path: Optional[Path], required: bool) -> Optional[str]:
        if path is None or not path.exists():
            if required:
                raise ProvisionerError("generate_profile", str(path), "CA certificate not found")
            return None
        return path.read_text(encoding="utf-8").strip()

    def _write_profile(self, name: str) -> str:
        try:
            content = self.render(name)
            self.profile_dir.mkdir(parents=True, exist_ok=True)
            stamp = time.time_ns() // 1_000_000
            path = self.profile_dir / f"{name}_{stamp}{PROFILE_SUFFIX}"
            # Two regenerations within one millisecond must not share a file
            while path.exists():
                stamp += 1
                path = self.profile_dir / f"{name}_{stamp}{PROFILE_SUFFIX}"
            path.write_text(content, encoding="utf-8")
            # Profiles carry auth material
            path.chmod(0o600)
        except ProvisionerError:
            raise
        except OSError as e:
            raise ProvisionerError("generate_profile", name, str(e)) from e

        logger.info(f"Generated VPN profile for {name}: {path.name}")
        return str(path)

    def _remove_profiles(self, name: str) -> bool:
        ok = True
        for path in self.profiles_for(name):
            try:
                path.unlink()
                logger.info(f"Cleaned up profile file: {path.name}")
            except OSError as e:
                logger.error(f"Failed to remove profile {path.name}: {e}")
                ok = False
        return ok
