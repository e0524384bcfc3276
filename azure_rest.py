"""
Lightweight Azure Resource Manager REST helpers (API-only).
Requires: requests

Provides:
- get_access_token / request_token: client credentials flow
- wait_for_operation: follow an ARM long-running operation to its terminal state
- create_resource_group / delete_resource_group / resource_group_exists
- create_virtual_network / subnet_id: vnet with named subnets
- build_internal_load_balancer: request body for a private-frontend load balancer
- create_or_update_load_balancer / get_load_balancer / list_load_balancers / delete_load_balancer
- set_rule_idle_timeout / inbound_nat_rule_id: edit and inspect load balancer bodies
- create_nic: NIC joined to backend pools and inbound NAT rules
- create_availability_set / create_or_update_vm

Usage: see manage_internal_lb.py
"""
from typing import Optional, Dict, Any, Callable, Iterable, List, Mapping, Tuple, Union
import copy
import json
import logging
import time

import requests

MANAGEMENT_ENDPOINT = "https://management.azure.com"
LOGIN_ENDPOINT = "https://login.microsoftonline.com"
MANAGEMENT_SCOPE = "https://management.azure.com/.default"

RESOURCES_API_VERSION = "2021-04-01"
NETWORK_API_VERSION = "2024-05-01"
COMPUTE_API_VERSION = "2024-11-01"

DEFAULT_OPERATION_TIMEOUT = 900
DEFAULT_POLL_INTERVAL = 5

DEFAULT_IMAGE_REFERENCE = {
    "publisher": "Canonical",
    "offer": "0001-com-ubuntu-server-jammy",
    "sku": "22_04-lts-gen2",
    "version": "latest",
}

logger = logging.getLogger(__name__)

# A bearer token, or a callable returning a current one. Pass a callable when a
# call may outlive the token: it is asked again for every request, polls included.
Token = Union[str, Callable[[], str]]


class AzureOperationError(Exception):
    """An ARM async operation reached a terminal status other than Succeeded."""

    def __init__(self, status: str, error: Optional[Dict[str, Any]] = None):
        self.status = status
        self.error = error or {}
        message = self.error.get("message") or "no error details"
        super().__init__(f"Azure operation {status}: {message}")


def request_token(tenant_id: str, client_id: str, client_secret: str, scope: str = MANAGEMENT_SCOPE) -> Dict[str, Any]:
    """Run the client credentials flow and return the token endpoint response.

    The response carries `access_token` and `expires_in` (seconds).
    """
    url = f"{LOGIN_ENDPOINT}/{tenant_id}/oauth2/v2.0/token"
    data = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
        "scope": scope,
    }
    r = requests.post(url, data=data)
    r.raise_for_status()
    return r.json()


def get_access_token(tenant_id: str, client_id: str, client_secret: str, scope: str = MANAGEMENT_SCOPE) -> str:
    """Obtain an OAuth2 token using client credentials.
    Returns the bearer token string (not prefixed).
    """
    return request_token(tenant_id, client_id, client_secret, scope)["access_token"]


def _headers(token: Token) -> Dict[str, str]:
    if callable(token):
        token = token()
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


def _raise_for_status(r: requests.Response, what: str) -> None:
    try:
        r.raise_for_status()
    except requests.exceptions.HTTPError:
        try:
            logger.error("%s HTTP error response: %s", what, json.dumps(r.json(), indent=2))
        except ValueError:
            logger.error("%s HTTP error response text: %s", what, r.text)
        raise


def _json_or_none(r: requests.Response) -> Optional[Dict[str, Any]]:
    if not r.content:
        return None
    return r.json()


def resource_group_id(subscription_id: str, resource_group: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


def _resource_url(subscription_id: str, resource_group: str, provider_path: str, api_version: str) -> str:
    return f"{MANAGEMENT_ENDPOINT}{resource_group_id(subscription_id, resource_group)}/providers/{provider_path}?api-version={api_version}"


def load_balancer_id(subscription_id: str, resource_group: str, name: str) -> str:
    return f"{resource_group_id(subscription_id, resource_group)}/providers/Microsoft.Network/loadBalancers/{name}"


def load_balancer_child_id(lb_id: str, kind: str, name: str) -> str:
    """Id of a load balancer sub-resource, e.g. kind='probes' or 'backendAddressPools'."""
    return f"{lb_id}/{kind}/{name}"


def subnet_resource_id(subscription_id: str, resource_group: str, vnet_name: str, subnet_name: str) -> str:
    # must start with '/subscriptions/...'
    return f"{resource_group_id(subscription_id, resource_group)}/providers/Microsoft.Network/virtualNetworks/{vnet_name}/subnets/{subnet_name}"


def _retry_after(r: requests.Response, default: int) -> int:
    value = r.headers.get("Retry-After")
    if value and value.isdigit():
        return int(value)
    return default


def wait_for_operation(response: requests.Response, token: Token, timeout: int = DEFAULT_OPERATION_TIMEOUT, poll_interval: int = DEFAULT_POLL_INTERVAL) -> Optional[Dict[str, Any]]:
    """Wait for the operation started by `response` to finish.

    A response carrying `Azure-AsyncOperation` is polled through that URL; a 201/202
    response with only `Location` is polled through `Location`. Anything else is
    already complete and its body (if any) is returned.

    Raises AzureOperationError when the operation ends Failed or Canceled,
    and TimeoutError when it does not finish within `timeout` seconds.
    """
    _raise_for_status(response, "operation")
    async_url = response.headers.get("Azure-AsyncOperation")
    location_url = response.headers.get("Location") if response.status_code in (201, 202) else None
    if not async_url and not location_url:
        return _json_or_none(response)

    end_time = time.time() + timeout
    while time.time() < end_time:
        time.sleep(_retry_after(response, poll_interval))
        if async_url:
            response = requests.get(async_url, headers=_headers(token))
            if response.status_code >= 500:
                logger.warning("Failed fetching async status (%s), will retry: %s", response.status_code, response.text)
                continue
            _raise_for_status(response, "async operation status")
            pj = response.json()
            status = pj.get("status") or pj.get("properties", {}).get("provisioningState")
            if status == "Succeeded":
                return pj
            if status in ("Failed", "Canceled"):
                logger.error("Async operation %s: %s", status, json.dumps(pj, indent=2))
                raise AzureOperationError(status, pj.get("error"))
            logger.debug("Async operation status=%s", status)
        else:
            response = requests.get(location_url, headers=_headers(token))
            if response.status_code == 202:
                continue
            if response.status_code >= 500:
                logger.warning("Failed fetching operation result (%s), will retry: %s", response.status_code, response.text)
                continue
            _raise_for_status(response, "operation result")
            return _json_or_none(response)
    raise TimeoutError(f"Timed out after {timeout}s waiting for Azure operation")


def _get(url: str, token: Token, what: str) -> Dict[str, Any]:
    r = requests.get(url, headers=_headers(token))
    _raise_for_status(r, what)
    return r.json()


def _put_and_wait(url: str, token: Token, body: Dict[str, Any], what: str, timeout: int, poll_interval: int) -> Dict[str, Any]:
    r = requests.put(url, headers=_headers(token), json=body)
    _raise_for_status(r, what)
    if r.headers.get("Azure-AsyncOperation") or (r.status_code in (201, 202) and r.headers.get("Location")):
        wait_for_operation(r, token, timeout, poll_interval)
        # the PUT body reflects an in-progress state; read back the provisioned resource
        return _get(url, token, what)
    return r.json()


def _delete_and_wait(url: str, token: Token, what: str, timeout: int, poll_interval: int) -> Optional[Dict[str, Any]]:
    r = requests.delete(url, headers=_headers(token))
    _raise_for_status(r, what)
    return wait_for_operation(r, token, timeout, poll_interval)


def create_resource_group(subscription_id: str, resource_group: str, token: Token, location: str, tags: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    url = f"{MANAGEMENT_ENDPOINT}{resource_group_id(subscription_id, resource_group)}?api-version={RESOURCES_API_VERSION}"
    body: Dict[str, Any] = {"location": location}
    if tags:
        body["tags"] = tags
    r = requests.put(url, headers=_headers(token), json=body)
    _raise_for_status(r, "create_resource_group")
    return r.json()


def resource_group_exists(subscription_id: str, resource_group: str, token: Token) -> bool:
    url = f"{MANAGEMENT_ENDPOINT}{resource_group_id(subscription_id, resource_group)}?api-version={RESOURCES_API_VERSION}"
    r = requests.head(url, headers=_headers(token))
    if r.status_code == 404:
        return False
    _raise_for_status(r, "resource_group_exists")
    return True


def delete_resource_group(subscription_id: str, resource_group: str, token: Token, timeout: int = DEFAULT_OPERATION_TIMEOUT, poll_interval: int = DEFAULT_POLL_INTERVAL) -> None:
    """Delete a resource group and everything in it; blocks until ARM reports completion."""
    url = f"{MANAGEMENT_ENDPOINT}{resource_group_id(subscription_id, resource_group)}?api-version={RESOURCES_API_VERSION}"
    _delete_and_wait(url, token, "delete_resource_group", timeout, poll_interval)


def create_virtual_network(
    subscription_id: str,
    resource_group: str,
    vnet_name: str,
    token: Token,
    location: str,
    address_prefixes: Iterable[str],
    subnets: Mapping[str, str],
    timeout: int = DEFAULT_OPERATION_TIMEOUT,
    poll_interval: int = DEFAULT_POLL_INTERVAL,
) -> Dict[str, Any]:
    """Create or update a virtual network.

    `subnets` maps subnet name to address prefix, in creation order.
    Returns the provisioned vnet JSON (subnet ids included).
    """
    url = _resource_url(subscription_id, resource_group, f"Microsoft.Network/virtualNetworks/{vnet_name}", NETWORK_API_VERSION)
    body = {
        "location": location,
        "properties": {
            "addressSpace": {"addressPrefixes": list(address_prefixes)},
            "subnets": [{"name": name, "properties": {"addressPrefix": prefix}} for name, prefix in subnets.items()],
        },
    }
    return _put_and_wait(url, token, body, "create_virtual_network", timeout, poll_interval)


def subnet_id(vnet: Dict[str, Any], subnet_name: str) -> str:
    """Find a subnet id by name in a vnet returned by ARM. Raises KeyError if absent."""
    for subnet in vnet.get("properties", {}).get("subnets", []):
        if subnet.get("name") == subnet_name:
            return subnet["id"]
    raise KeyError(f"Subnet {subnet_name!r} not found in virtual network {vnet.get('name')!r}")


def build_internal_load_balancer(
    lb_id: str,
    location: str,
    frontend_name: str,
    subnet_id: str,
    private_ip: str,
    backend_pool_name: str,
    rule_name: str,
    probe_name: str,
    port: int,
    probe_port: int = 80,
    probe_path: str = "/",
    probe_interval: int = 10,
    probe_count: int = 2,
    nat_rules: Iterable[Tuple[str, int, int]] = (),
    idle_timeout: int = 15,
) -> Dict[str, Any]:
    """Return the request body for a Standard internal load balancer.

    One private frontend with a fixed address in `subnet_id`, one backend pool,
    one TCP rule balancing `port` to the same backend port, one HTTP probe for
    that rule and one TCP inbound NAT rule per (name, frontend_port, backend_port).
    Sub-resources reference each other by id, so `lb_id` must be the id the
    load balancer will have once created.
    """
    frontend_id = load_balancer_child_id(lb_id, "frontendIPConfigurations", frontend_name)
    pool_id = load_balancer_child_id(lb_id, "backendAddressPools", backend_pool_name)
    probe_id = load_balancer_child_id(lb_id, "probes", probe_name)
    return {
        "location": location,
        "sku": {"name": "Standard", "tier": "Regional"},
        "properties": {
            "frontendIPConfigurations": [
                {
                    "name": frontend_name,
                    "properties": {
                        "privateIPAllocationMethod": "Static",
                        "privateIPAddress": private_ip,
                        "subnet": {"id": subnet_id},
                    },
                }
            ],
            "backendAddressPools": [{"name": backend_pool_name}],
            "loadBalancingRules": [
                {
                    "name": rule_name,
                    "properties": {
                        "frontendIPConfiguration": {"id": frontend_id},
                        "backendAddressPool": {"id": pool_id},
                        "probe": {"id": probe_id},
                        "protocol": "Tcp",
                        "frontendPort": port,
                        "backendPort": port,
                        "enableFloatingIP": False,
                        "idleTimeoutInMinutes": idle_timeout,
                    },
                }
            ],
            "probes": [
                {
                    "name": probe_name,
                    "properties": {
                        "protocol": "Http",
                        "port": probe_port,
                        "requestPath": probe_path,
                        "intervalInSeconds": probe_interval,
                        "numberOfProbes": probe_count,
                    },
                }
            ],
            "inboundNatRules": [
                {
                    "name": name,
                    "properties": {
                        "frontendIPConfiguration": {"id": frontend_id},
                        "protocol": "Tcp",
                        "frontendPort": frontend_port,
                        "backendPort": backend_port,
                        "idleTimeoutInMinutes": idle_timeout,
                        "enableFloatingIP": False,
                    },
                }
                for name, frontend_port, backend_port in nat_rules
            ],
        },
    }


def create_or_update_load_balancer(subscription_id: str, resource_group: str, name: str, token: Token, body: Dict[str, Any], timeout: int = DEFAULT_OPERATION_TIMEOUT, poll_interval: int = DEFAULT_POLL_INTERVAL) -> Dict[str, Any]:
    url = _resource_url(subscription_id, resource_group, f"Microsoft.Network/loadBalancers/{name}", NETWORK_API_VERSION)
    return _put_and_wait(url, token, body, "create_or_update_load_balancer", timeout, poll_interval)


def get_load_balancer(subscription_id: str, resource_group: str, name: str, token: Token) -> Dict[str, Any]:
    url = _resource_url(subscription_id, resource_group, f"Microsoft.Network/loadBalancers/{name}", NETWORK_API_VERSION)
    return _get(url, token, "get_load_balancer")


def list_load_balancers(subscription_id: str, resource_group: str, token: Token) -> Dict[str, Any]:
    """List load balancers in a resource group (single page).

    Returns the parsed JSON response; follow `nextLink` for more.
    """
    url = _resource_url(subscription_id, resource_group, "Microsoft.Network/loadBalancers", NETWORK_API_VERSION)
    return _get(url, token, "list_load_balancers")


def delete_load_balancer(subscription_id: str, resource_group: str, name: str, token: Token, timeout: int = DEFAULT_OPERATION_TIMEOUT, poll_interval: int = DEFAULT_POLL_INTERVAL) -> None:
    url = _resource_url(subscription_id, resource_group, f"Microsoft.Network/loadBalancers/{name}", NETWORK_API_VERSION)
    _delete_and_wait(url, token, "delete_load_balancer", timeout, poll_interval)


def _named(items: List[Dict[str, Any]], name: str, kind: str) -> Dict[str, Any]:
    for item in items:
        if item.get("name") == name:
            return item
    raise KeyError(f"{kind} {name!r} not found")


def set_rule_idle_timeout(lb: Dict[str, Any], rule_name: str, minutes: int) -> Dict[str, Any]:
    """Return a copy of load balancer `lb` with the TCP idle timeout of one rule changed.

    ARM accepts 4 to 30 minutes.
    """
    if not 4 <= minutes <= 30:
        raise ValueError(f"Idle timeout must be between 4 and 30 minutes, got {minutes}")
    updated = copy.deepcopy(lb)
    rules = updated.get("properties", {}).get("loadBalancingRules", [])
    rule = _named(rules, rule_name, "Load balancing rule")
    rule.setdefault("properties", {})["idleTimeoutInMinutes"] = minutes
    return updated


def inbound_nat_rule_id(lb: Dict[str, Any], rule_name: str) -> str:
    rules = lb.get("properties", {}).get("inboundNatRules", [])
    return _named(rules, rule_name, "Inbound NAT rule")["id"]


def create_nic(
    subscription_id: str,
    resource_group: str,
    nic_name: str,
    token: Token,
    subnet_id: str,
    location: str,
    backend_pool_ids: Iterable[str] = (),
    inbound_nat_rule_ids: Iterable[str] = (),
    timeout: int = DEFAULT_OPERATION_TIMEOUT,
    poll_interval: int = DEFAULT_POLL_INTERVAL,
) -> Dict[str, Any]:
    """Create a NIC with one dynamic private IP configuration in `subnet_id`.

    The configuration joins the given load balancer backend pools and inbound NAT rules.
    Returns the provisioned NIC JSON.
    """
    url = _resource_url(subscription_id, resource_group, f"Microsoft.Network/networkInterfaces/{nic_name}", NETWORK_API_VERSION)
    ip_conf: Dict[str, Any] = {
        "name": "default-config",
        "properties": {
            "subnet": {"id": subnet_id},
            "privateIPAllocationMethod": "Dynamic",
            "loadBalancerBackendAddressPools": [{"id": pool_id} for pool_id in backend_pool_ids],
            "loadBalancerInboundNatRules": [{"id": rule_id} for rule_id in inbound_nat_rule_ids],
        },
    }
    body = {"location": location, "properties": {"ipConfigurations": [ip_conf]}}
    return _put_and_wait(url, token, body, "create_nic", timeout, poll_interval)


def create_availability_set(subscription_id: str, resource_group: str, name: str, token: Token, location: str, fault_domains: int = 2, update_domains: int = 4) -> Dict[str, Any]:
    # Aligned SKU is required for VMs with managed disks
    url = _resource_url(subscription_id, resource_group, f"Microsoft.Compute/availabilitySets/{name}", COMPUTE_API_VERSION)
    body = {
        "location": location,
        "sku": {"name": "Aligned"},
        "properties": {
            "platformFaultDomainCount": fault_domains,
            "platformUpdateDomainCount": update_domains,
        },
    }
    r = requests.put(url, headers=_headers(token), json=body)
    _raise_for_status(r, "create_availability_set")
    return r.json()


def create_or_update_vm(
    subscription_id: str,
    resource_group: str,
    vm_name: str,
    token: Token,
    nic_id: str,
    location: str,
    admin_username: str,
    admin_password: str,
    vm_size: str = "Standard_D2as_v5",
    availability_set_id: Optional[str] = None,
    image_reference: Optional[Dict[str, str]] = None,
    os_disk_type: str = "Premium_LRS",
    os_disk_size_gb: Optional[int] = None,
    timeout: int = DEFAULT_OPERATION_TIMEOUT,
    poll_interval: int = DEFAULT_POLL_INTERVAL,
) -> Dict[str, Any]:
    """Create or update a Linux VM by calling the Compute "Create Or Update" REST API (PUT).

    It requires an existing NIC id (nic_id), attached as the primary interface.
    Blocks until the VM is provisioned and returns its JSON.
    """
    if not nic_id:
        raise ValueError("nic_id is required to create a VM with this helper")

    image_reference = image_reference or DEFAULT_IMAGE_REFERENCE
    os_disk: Dict[str, Any] = {
        "caching": "ReadWrite",
        "managedDisk": {"storageAccountType": os_disk_type},
        "name": f"{vm_name}-osdisk",
        "createOption": "FromImage",
        "deleteOption": "Delete",
    }
    if os_disk_size_gb:
        os_disk["diskSizeGB"] = os_disk_size_gb

    properties: Dict[str, Any] = {
        "hardwareProfile": {"vmSize": vm_size},
        "storageProfile": {"imageReference": image_reference, "osDisk": os_disk},
        "osProfile": {
            "adminUsername": admin_username,
            "computerName": vm_name,
            "adminPassword": admin_password,
            "linuxConfiguration": {
                "disablePasswordAuthentication": False,
                "provisionVMAgent": True,
                "patchSettings": {"patchMode": "ImageDefault"},
            },
        },
        "networkProfile": {"networkInterfaces": [{"id": nic_id, "properties": {"primary": True}}]},
    }
    if availability_set_id:
        properties["availabilitySet"] = {"id": availability_set_id}

    url = _resource_url(subscription_id, resource_group, f"Microsoft.Compute/virtualMachines/{vm_name}", COMPUTE_API_VERSION)
    return _put_and_wait(url, token, {"location": location, "properties": properties}, "create_or_update_vm", timeout, poll_interval)
