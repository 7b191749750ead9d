"""Deterministic rendering of daemon configuration, client profiles and overrides.

Rendering is pure: the same inputs always produce byte-identical text and
nothing here touches the filesystem or external programs.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .providers.easyrsa import AuthorityPaths
from .state.records import InstancePaths, Route, ServerSettings
from .templates import TemplateEngine

SERVER_TEMPLATE = "openvpn/server.conf.j2"
PROFILE_TEMPLATE = "openvpn/client.ovpn.j2"
OVERRIDE_TEMPLATE = "openvpn/ccd.j2"


@dataclass(slots=True)
class ConfigRenderer:
    """Render OpenVPN text artifacts from settings records."""

    templates: TemplateEngine

    def render_server_config(
        self,
        settings: ServerSettings,
        authority_paths: AuthorityPaths,
        instance_paths: InstancePaths,
        device: str,
        *,
        instance_name: str = "",
    ) -> str:
        """Return the daemon configuration for one instance."""
        context = {
            "instance_name": instance_name or device,
            "port": settings.port,
            "protocol": settings.protocol,
            "device": device,
            "dev_type": settings.dev_type,
            "ca": str(authority_paths.ca),
            "cert": str(authority_paths.server_cert),
            "key": str(authority_paths.server_key),
            "dh": str(authority_paths.dh),
            "crl": str(authority_paths.crl),
            "subnet": settings.subnet,
            "subnet_mask": settings.subnet_mask,
            "pool_file": str(instance_paths.pool_file),
            "ccd_dir": str(instance_paths.ccd_dir),
            "dns": list(settings.dns),
            "routes": [route.to_dict() for route in settings.routes],
            "client_to_client": settings.client_to_client,
            "keepalive": settings.keepalive,
            "tls_auth": settings.tls_auth,
            "tls_auth_path": str(authority_paths.tls_auth),
            "cipher": settings.cipher,
            "auth": settings.auth,
            "compress": settings.compress,
            "max_clients": settings.max_clients,
            "status_file": str(instance_paths.status_file),
            "log_file": str(instance_paths.log_file),
        }
        return self.templates.render_to_string(SERVER_TEMPLATE, context)

    def render_client_profile(
        self,
        settings: ServerSettings,
        ca: str,
        cert: str,
        key: str,
        tls_auth: str | None,
    ) -> str:
        """Return a self-contained ``.ovpn`` profile with inline credentials."""
        context = {
            "dev_type": settings.dev_type,
            "protocol": settings.protocol,
            "hostname": settings.hostname,
            "port": settings.port,
            "cipher": settings.cipher,
            "auth": settings.auth,
            "compress": settings.compress,
            "ca": ca.strip(),
            "cert": cert.strip(),
            "key": key.strip(),
            "tls_auth": tls_auth.strip() if settings.tls_auth and tls_auth else "",
        }
        return self.templates.render_to_string(PROFILE_TEMPLATE, context)

    def render_client_override(
        self,
        static_address: str | None,
        netmask: str,
        routes: Sequence[Route] = (),
    ) -> str:
        """Return the per-client override file content."""
        context = {
            "static_address": static_address or "",
            "netmask": netmask,
            "routes": [route.to_dict() for route in routes],
        }
        return self.templates.render_to_string(OVERRIDE_TEMPLATE, context)


__all__ = ["ConfigRenderer"]
