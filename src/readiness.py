"""Readiness gating and pre-flight checks.

wait_until_ready() blocks on a created resource until the provisioning API
reports it ready. The validate_* helpers check the provisioning endpoint
before a run starts.
"""

import logging
import socket
import threading
from typing import Optional
from urllib.parse import urlparse

import requests
import urllib3

from common import poll_until
from provisioner import Provisioner, ProvisioningError, ResourceHandle, ResourceStatus

# Suppress SSL warnings for self-signed certs (verify=False)
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)


def wait_until_ready(
    provisioner: Provisioner,
    handle: ResourceHandle,
    timeout: float,
    interval: float,
    cancel: Optional[threading.Event] = None,
) -> ResourceStatus:
    """Poll describe() until the resource reports ready.

    Args:
        provisioner: Provisioning API client
        handle: Resource returned by create()
        timeout: Maximum seconds to wait
        interval: Seconds between describe() calls
        cancel: Optional cooperative cancellation flag

    Returns:
        The first ready ResourceStatus

    Raises:
        ProvisioningError: If the resource reports failed
        ReadinessTimeoutError: If timeout expires first
        RunCancelled: If cancel is set while waiting
    """
    what = f"{handle.type or 'resource'} '{handle.name or handle.id}'"
    logger.info(f"Waiting for {what} to become ready (timeout {timeout:g}s)")

    def check() -> Optional[ResourceStatus]:
        status = provisioner.describe(handle)
        if status.is_failed:
            raise ProvisioningError(f"{what} failed: {status.message or 'no detail'}")
        return status if status.is_ready else None

    status = poll_until(check, what, timeout=timeout, interval=interval, cancel=cancel)
    logger.info(f"{what} is ready")
    return status


def validate_api_endpoint(api_endpoint: str, api_token: str = '',
                          verify: bool = True) -> tuple[bool, str]:
    """Validate the provisioning API before a run.

    Makes a lightweight health call to verify the endpoint answers and
    accepts the token.

    Args:
        api_endpoint: Provisioning API base URL
        api_token: Bearer token, if the API requires one
        verify: Verify TLS certificates

    Returns:
        (success, message) tuple
    """
    headers = {'Authorization': f'Bearer {api_token}'} if api_token else {}
    try:
        resp = requests.get(
            f"{api_endpoint.rstrip('/')}/health",
            headers=headers,
            verify=verify,
            timeout=10,
        )

        if resp.status_code in (401, 403):
            return False, (
                "Provisioning API rejected the token. "
                "Check --api-token or $STACK_DRIVER_API_TOKEN"
            )

        if resp.status_code == 200:
            try:
                version = resp.json().get('version', 'unknown')
            except ValueError:
                version = 'unknown'
            return True, f"Provisioning API accessible (version {version})"

        return False, f"Unexpected API response: {resp.status_code} - {resp.text[:100]}"

    except requests.exceptions.ConnectionError as e:
        return False, f"Cannot connect to {api_endpoint}: {e}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {api_endpoint}"
    except requests.exceptions.RequestException as e:
        return False, f"Error validating endpoint: {e}"


def validate_host_reachable(host: str, port: int = 443, timeout: float = 5.0) -> tuple[bool, str]:
    """Check if host is reachable on specified port.

    Returns:
        (success, message) tuple
    """
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.close()
        return True, f"Host {host} reachable on port {port}"
    except socket.timeout:
        return False, f"Timeout connecting to {host}:{port}"
    except OSError as e:
        return False, f"Cannot connect to {host}:{port}: {e}"


def run_preflight(api_endpoint: str, api_token: str = '',
                  verify: bool = True) -> list[tuple[str, bool, str]]:
    """Run all pre-flight checks for an endpoint.

    Returns:
        List of (check name, success, message); the API check is skipped
        when the host is unreachable.
    """
    parsed = urlparse(api_endpoint)
    host = parsed.hostname or api_endpoint
    port = parsed.port or (443 if parsed.scheme == 'https' else 80)

    results = []
    ok, msg = validate_host_reachable(host, port)
    results.append(('host_reachable', ok, msg))
    if ok:
        ok, msg = validate_api_endpoint(api_endpoint, api_token, verify=verify)
        results.append(('api_endpoint', ok, msg))
    return results
