"""Network policy evaluation for background sync.

A :class:`NetworkProbe` answers two questions about the current
connection: whether it is WiFi, and which SSID it uses. The policy gate
:func:`is_sync_allowed` combines those answers with the user's
:class:`~notesync.models.schema.NetworkPolicy`.
"""
import logging
import shutil
import subprocess
from typing import List, Optional, Protocol

from notesync.models.schema import NetworkPolicy

logger = logging.getLogger(__name__)


class NetworkProbe(Protocol):
    def is_on_wifi(self) -> bool: ...

    def current_ssid(self) -> Optional[str]: ...


class StaticNetworkProbe:
    """Probe with fixed answers, for tests and headless setups."""

    def __init__(self, on_wifi: bool = True, ssid: Optional[str] = None):
        self.on_wifi = on_wifi
        self.ssid = ssid

    def is_on_wifi(self) -> bool:
        return self.on_wifi

    def current_ssid(self) -> Optional[str]:
        return self.ssid if self.on_wifi else None


class SystemNetworkProbe:
    """Reads the connection state from NetworkManager, or ``iwgetid``.

    When neither tool is installed the machine is treated as not being on
    WiFi, so a WiFi-only policy blocks sync rather than guessing.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def _run(self, cmd: List[str]) -> Optional[str]:
        if shutil.which(cmd[0]) is None:
            return None
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout, check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Network probe '{cmd[0]}' failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout

    def is_on_wifi(self) -> bool:
        output = self._run(["nmcli", "-t", "-f", "TYPE,STATE", "device"])
        if output is not None:
            return any(
                line.split(":")[:2] == ["wifi", "connected"]
                for line in output.splitlines()
            )
        return self.current_ssid() is not None

    def current_ssid(self) -> Optional[str]:
        output = self._run(["nmcli", "-t", "-f", "ACTIVE,SSID", "device", "wifi"])
        if output is not None:
            for line in output.splitlines():
                active, _, ssid = line.partition(":")
                if active == "yes" and ssid:
                    # nmcli escapes literal colons in terse mode
                    return ssid.replace("\\:", ":")
            return None
        output = self._run(["iwgetid", "-r"])
        if output is not None and output.strip():
            return output.strip()
        return None


def is_sync_allowed(policy: NetworkPolicy, probe: NetworkProbe) -> bool:
    """Decide whether the current connection satisfies ``policy``.

    The SSID comparison is exact and case-sensitive.
    """
    if not policy.sync_only_on_wifi:
        return True

    if not probe.is_on_wifi():
        logger.debug("Sync not allowed: not on WiFi")
        return False

    if policy.sync_on_specific_wifi and policy.required_ssid:
        current = probe.current_ssid()
        allowed = current == policy.required_ssid
        logger.debug(
            f"Current SSID='{current}', required='{policy.required_ssid}', allowed={allowed}"
        )
        return allowed

    return True
