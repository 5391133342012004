import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import PROVISION_SETTINGS
from errors import InvalidInputError

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r'^[a-zA-Z0-9]+$')

# Panel REST paths per protocol
PANEL_ENDPOINTS = {
    "ssh": {"create": "/vps/sshvpn", "trial": "/vps/trialsshvpn",
            "renew": "/vps/renewsshvpn", "delete": "/vps/deletesshvpn"},
    "udp_http": {"create": "/vps/sshvpn", "trial": "/vps/trialsshvpn",
                 "renew": "/vps/renewsshvpn", "delete": "/vps/deletesshvpn"},
    "zivpn": {"create": "/vps/sshvpn", "trial": "/vps/trialsshvpn",
              "renew": "/vps/renewsshvpn", "delete": "/vps/deletesshvpn"},
    "vmess": {"create": "/vps/vmessall", "trial": "/vps/trialvmessall",
              "renew": "/vps/renewvmess", "delete": "/vps/deletevmess"},
    "vless": {"create": "/vps/vlessall", "trial": "/vps/trialvlessall",
              "renew": "/vps/renewvless", "delete": "/vps/deletevless"},
    "trojan": {"create": "/vps/trojanall", "trial": "/vps/trialtrojanall",
               "renew": "/vps/renewtrojan", "delete": "/vps/deletetrojan"},
}

# Shadowsocks is served by a separate agent on its own port
SHADOWSOCKS_PORT = 5888


def validate_username(username: str):
    if not username or not USERNAME_PATTERN.match(username):
        raise InvalidInputError("username must contain only letters and digits")


@dataclass
class ProvisionResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def username(self) -> Optional[str]:
        return self.data.get('username')

    @property
    def expiry_info(self) -> Optional[str]:
        return self.data.get('expiry_info')

    @property
    def connection_links(self) -> List[str]:
        return self.data.get('connection_links') or []

    @classmethod
    def failure(cls, message: str) -> 'ProvisionResult':
        return cls(False, {}, message)


def _extract_data(raw: Dict[str, Any]) -> Dict[str, Any]:
    links = [value for key, value in raw.items()
             if 'link' in key.lower() and isinstance(value, str) and value]
    return {
        'username': raw.get('username') or raw.get('user'),
        'password': raw.get('password'),
        'hostname': raw.get('hostname') or raw.get('domain'),
        'expiry_info': raw.get('to') or raw.get('exp') or raw.get('expired'),
        'connection_links': links,
        'raw': raw
    }


def parse_panel_response(body: str) -> ProvisionResult:
    """Interpret a panel reply; anything but a code-200 envelope with data is a failure"""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return ProvisionResult.failure("invalid response format from server")

    if not isinstance(payload, dict):
        return ProvisionResult.failure("invalid response format from server")

    meta = payload.get('meta')
    if not isinstance(meta, dict):
        meta = {}
    if 'status' in payload and 'meta' not in payload:
        ok = payload.get('status') == 'success' and payload.get('data')
    else:
        ok = meta.get('code') == 200 and payload.get('data')
    if not ok:
        message = payload.get('message') or meta.get('message') or json.dumps(payload)
        if 'exist' in str(message).lower() or 'already' in str(message).lower():
            message = f"username already exists: {message}"
        return ProvisionResult.failure(str(message))

    data = payload['data']
    if not isinstance(data, dict):
        return ProvisionResult.failure("invalid response format from server")
    return ProvisionResult(True, _extract_data(data))


class ProvisionBackend:
    """Create/renew/delete accounts on a remote panel.

    Implementations return a ProvisionResult and do not raise for remote
    failures.
    """

    async def create(self, identity, params: dict, server) -> ProvisionResult:
        raise NotImplementedError

    async def trial(self, identity, params: dict, server) -> ProvisionResult:
        raise NotImplementedError

    async def renew(self, identity, params: dict, server) -> ProvisionResult:
        raise NotImplementedError

    async def delete(self, identity, params: dict, server) -> ProvisionResult:
        raise NotImplementedError


class PanelBackend(ProvisionBackend):
    def __init__(self, timeout: int = PROVISION_SETTINGS["request_timeout"]):
        self.timeout = ClientTimeout(total=timeout)

    async def create(self, identity, params, server):
        return await self._create(identity, params, server, 'create')

    async def trial(self, identity, params, server):
        return await self._create(identity, params, server, 'trial')

    async def renew(self, identity, params, server):
        if identity.protocol_type == 'shadowsocks':
            return await self._shadowsocks('renewshadowsocks', identity, params, server)
        path = PANEL_ENDPOINTS[identity.protocol_type]['renew']
        url = f"http://{server.domain}{path}/{identity.username}/{params.get('days', 30)}"
        return await self._request('PATCH', url, server, {"kuota": params.get('quota', 0)})

    async def delete(self, identity, params, server):
        if identity.protocol_type == 'shadowsocks':
            return await self._shadowsocks('deleteshadowsocks', identity, params, server)
        path = PANEL_ENDPOINTS[identity.protocol_type]['delete']
        url = f"http://{server.domain}{path}/{identity.username}"
        return await self._request('DELETE', url, server)

    async def _create(self, identity, params, server, action):
        if identity.protocol_type == 'shadowsocks':
            return await self._shadowsocks('createshadowsocks', identity, params, server)
        path = PANEL_ENDPOINTS[identity.protocol_type][action]
        body = {
            "expired": params.get('days', 30),
            "kuota": str(params.get('quota', 0)),
            "limitip": str(params.get('ip_limit', 0)),
            "username": identity.username
        }
        if params.get('password'):
            body["password"] = params['password']
        return await self._request('POST', f"http://{server.domain}{path}", server, body)

    async def _shadowsocks(self, action, identity, params, server):
        url = f"http://{server.domain}:{SHADOWSOCKS_PORT}/{action}"
        query = {
            "user": identity.username,
            "exp": params.get('days', 30),
            "quota": params.get('quota', 0),
            "iplimit": params.get('ip_limit', 0),
            "auth": server.auth_token or ''
        }
        return await self._request('GET', url, server, query=query)

    async def _request(self, method, url, server, body=None, query=None) -> ProvisionResult:
        headers = {
            "Authorization": server.auth_token or '',
            "Accept": "application/json"
        }
        try:
            async with ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, json=body, params=query, headers=headers) as response:
                    raw = await response.read()
        except (ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Panel request {method} {url} failed: {e}")
            return ProvisionResult.failure(f"could not reach server: {e}")

        result = parse_panel_response(raw.decode('utf-8', errors='replace'))
        if not result.success:
            logger.error(f"Panel request {method} {url} rejected: {result.error_message}")
        return result
