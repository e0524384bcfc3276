from typing import Optional, List, Dict, Any, Iterable, Mapping
import os
import time
from pathlib import Path

import requests
from dotenv import load_dotenv

import azure_rest

# Load .env files: first next to this module, then the working directory
load_dotenv(Path(__file__).resolve().parent / ".env", override=False)
load_dotenv(Path.cwd() / ".env", override=False)

DEFAULT_LOCATION = "westus"
# refresh the cached token this many seconds before it expires
TOKEN_REFRESH_MARGIN = 300


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return default


class AzureClient:
    """Azure credentials wrapper used by `manage_internal_lb.py` and `mcp_server.py`.

    Reads AZ_TENANT_ID, AZ_CLIENT_ID, AZ_CLIENT_SECRET, AZ_SUBSCRIPTION_ID from environment
    (TENANT_ID, CLIENT_ID, CLIENT_SECRET, SUBSCRIPTION_ID are accepted too).
    Holds a bearer token, refreshed shortly before expiry, and binds the
    `azure_rest` helpers to one subscription and location.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        subscription_id: str,
        location: str = DEFAULT_LOCATION,
        operation_timeout: int = azure_rest.DEFAULT_OPERATION_TIMEOUT,
        poll_interval: int = azure_rest.DEFAULT_POLL_INTERVAL,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.subscription_id = subscription_id
        self.location = location
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_env(cls) -> "AzureClient":
        tenant = _env("AZ_TENANT_ID", "TENANT_ID")
        client_id = _env("AZ_CLIENT_ID", "CLIENT_ID")
        client_secret = _env("AZ_CLIENT_SECRET", "CLIENT_SECRET")
        subscription = _env("AZ_SUBSCRIPTION_ID", "SUBSCRIPTION_ID")
        if not all([tenant, client_id, client_secret, subscription]):
            raise RuntimeError("Missing Azure credentials in environment: AZ_TENANT_ID, AZ_CLIENT_ID, AZ_CLIENT_SECRET, AZ_SUBSCRIPTION_ID")
        return cls(
            tenant,
            client_id,
            client_secret,
            subscription,
            location=_env("AZ_LOCATION", default=DEFAULT_LOCATION),
            operation_timeout=int(_env("AZ_OPERATION_TIMEOUT", default=str(azure_rest.DEFAULT_OPERATION_TIMEOUT))),
            poll_interval=int(_env("AZ_POLL_INTERVAL", default=str(azure_rest.DEFAULT_POLL_INTERVAL))),
        )

    def token(self) -> str:
        if self._token is None or time.time() >= self._token_expires_at - TOKEN_REFRESH_MARGIN:
            j = azure_rest.request_token(self.tenant_id, self.client_id, self.client_secret)
            self._token = j["access_token"]
            self._token_expires_at = time.time() + int(j.get("expires_in", 3600))
        return self._token

    @property
    def _wait(self) -> Dict[str, int]:
        return {"timeout": self.operation_timeout, "poll_interval": self.poll_interval}

    def resource_group_id(self, resource_group: str) -> str:
        return azure_rest.resource_group_id(self.subscription_id, resource_group)

    def load_balancer_id(self, resource_group: str, name: str) -> str:
        return azure_rest.load_balancer_id(self.subscription_id, resource_group, name)

    def subnet_resource_id(self, resource_group: str, vnet_name: str, subnet_name: str) -> str:
        return azure_rest.subnet_resource_id(self.subscription_id, resource_group, vnet_name, subnet_name)

    def create_resource_group(self, resource_group: str) -> Dict[str, Any]:
        return azure_rest.create_resource_group(self.subscription_id, resource_group, self.token(), self.location)

    def resource_group_exists(self, resource_group: str) -> bool:
        return azure_rest.resource_group_exists(self.subscription_id, resource_group, self.token())

    def delete_resource_group(self, resource_group: str) -> None:
        azure_rest.delete_resource_group(self.subscription_id, resource_group, self.token, **self._wait)

    def create_virtual_network(self, resource_group: str, vnet_name: str, address_prefixes: Iterable[str], subnets: Mapping[str, str]) -> Dict[str, Any]:
        return azure_rest.create_virtual_network(self.subscription_id, resource_group, vnet_name, self.token, self.location, address_prefixes, subnets, **self._wait)

    def create_or_update_load_balancer(self, resource_group: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return azure_rest.create_or_update_load_balancer(self.subscription_id, resource_group, name, self.token, body, **self._wait)

    def get_load_balancer(self, resource_group: str, name: str) -> Dict[str, Any]:
        return azure_rest.get_load_balancer(self.subscription_id, resource_group, name, self.token())

    def get_load_balancer_safe(self, resource_group: str, name: str) -> Optional[Dict[str, Any]]:
        """Like `get_load_balancer` but returns None when the load balancer does not exist."""
        try:
            return self.get_load_balancer(resource_group, name)
        except requests.exceptions.HTTPError as ex:
            if ex.response is not None and ex.response.status_code == 404:
                return None
            raise

    def list_load_balancers_all(self, resource_group: str) -> List[Dict[str, Any]]:
        token = self.token()
        first = azure_rest.list_load_balancers(self.subscription_id, resource_group, token)
        lbs = list(first.get("value", []))
        next_link = first.get("nextLink")
        while next_link:
            r = requests.get(next_link, headers=azure_rest._headers(token))
            azure_rest._raise_for_status(r, "list_load_balancers")
            j = r.json()
            lbs.extend(j.get("value", []))
            next_link = j.get("nextLink")
        return lbs

    def delete_load_balancer(self, resource_group: str, name: str) -> None:
        azure_rest.delete_load_balancer(self.subscription_id, resource_group, name, self.token, **self._wait)

    def create_nic(self, resource_group: str, nic_name: str, subnet_id: str, backend_pool_ids: Iterable[str] = (), inbound_nat_rule_ids: Iterable[str] = ()) -> Dict[str, Any]:
        return azure_rest.create_nic(
            self.subscription_id, resource_group, nic_name, self.token, subnet_id, self.location,
            backend_pool_ids=backend_pool_ids, inbound_nat_rule_ids=inbound_nat_rule_ids, **self._wait
        )

    def create_availability_set(self, resource_group: str, name: str, fault_domains: int = 2, update_domains: int = 4) -> Dict[str, Any]:
        return azure_rest.create_availability_set(self.subscription_id, resource_group, name, self.token(), self.location, fault_domains, update_domains)

    def create_or_update_vm(self, resource_group: str, vm_name: str, nic_id: str, admin_username: str, admin_password: str, vm_size: str, availability_set_id: Optional[str] = None) -> Dict[str, Any]:
        return azure_rest.create_or_update_vm(
            self.subscription_id, resource_group, vm_name, self.token, nic_id, self.location,
            admin_username, admin_password, vm_size=vm_size, availability_set_id=availability_set_id, **self._wait
        )

