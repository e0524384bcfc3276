# pip install -e .

import json
import logging
import os
import sys

import uvicorn
from mcp.server.fastmcp import FastMCP

import azure_rest
import manage_internal_lb
from azure_client import AzureClient


class HostRewriteMiddleware:
    def __init__(self, app, host="127.0.0.1:8080"):
        self.app = app
        self.host = host.encode("utf-8")

    async def __call__(self, scope, receive, send):
        if scope.get("type") in ("http", "websocket"):
            headers = [(k, v) for k, v in scope.get("headers", []) if k.lower() != b"host"]
            headers.append((b"host", self.host))
            scope = dict(scope)
            scope["headers"] = headers
        await self.app(scope, receive, send)


name = "internal-lb-mcp-server"
logger = logging.getLogger(name)

host = os.environ.get('HOST', '0.0.0.0')
port = int(os.environ.get('PORT', 8080))
transport = os.environ.get('MCP_TRANSPORT', 'sse')
mcp = FastMCP(name, host=host, port=port)


@mcp.tool()
def mcp_capabilities() -> str:
    """Return a JSON string describing the MCP tools exposed by this server.

    Agents can call this first to learn what tools are available and how to use them.
    """
    caps = {
        "description": "MCP tools for provisioning and inspecting Azure internal load balancers",
        "tools": {
            "describe_topology": "Describe the internal load balancer topology the sample builds. No args.",
            "list_load_balancers": "List load balancers in a resource group (handles pagination). Args: resource_group",
            "get_load_balancer": "Return load balancer JSON. Args: resource_group, name",
            "get_load_balancer_summary": "Convenience: frontends, rules, probes and NAT rules of a load balancer. Args: resource_group, name",
            "create_internal_load_balancer": "(Guarded) Create an internal load balancer in an existing vnet subnet. Args: resource_group, name, vnet_name, private_ip, subnet_name, probe_count",
            "set_load_balancing_rule_idle_timeout": "(Guarded) Change a rule's TCP idle timeout. Args: resource_group, name, rule_name, minutes",
            "delete_load_balancer": "(Guarded) Delete a load balancer. Args: resource_group, name",
            "run_internal_lb_sample": "(Guarded) Run the full create/update/list/delete sample in a fresh resource group. No args.",
            "delete_resource_group": "(Guarded) Delete a resource group and everything in it. Args: resource_group",
        }
    }
    return json.dumps(caps)


def _get_client() -> AzureClient:
    return AzureClient.from_env()


def _deploy_enabled() -> bool:
    return os.environ.get("AZ_RUN_DEPLOY", "false").lower() == "true"


_DEPLOY_DISABLED = json.dumps({"error": "Deployments are disabled. Set AZ_RUN_DEPLOY=true to enable."})


@mcp.tool()
def describe_topology() -> str:
    """Describe the network the sample provisions: address space, subnets, ports and NAT rules."""
    logger.info("Tool called: describe_topology()")
    topology = {
        "addressSpace": manage_internal_lb.VNET_ADDRESS_SPACE,
        "subnets": manage_internal_lb.SUBNETS,
        "loadBalancingRule": {
            "name": manage_internal_lb.TCP_LOAD_BALANCING_RULE,
            "protocol": "Tcp",
            "port": manage_internal_lb.ORACLE_SQL_NODE_PORT,
            "idleTimeoutInMinutes": manage_internal_lb.IDLE_TIMEOUT_MINUTES,
        },
        "probe": {"name": manage_internal_lb.HTTP_PROBE, "protocol": "Http", "port": 80, "requestPath": "/", "intervalInSeconds": 10},
        "inboundNatRules": [
            {"name": rule, "frontendPort": frontend_port, "backendPort": backend_port}
            for rule, frontend_port, backend_port in manage_internal_lb.NAT_RULES
        ],
    }
    return json.dumps(topology)


@mcp.tool()
def list_load_balancers(resource_group: str) -> str:
    """List all load balancers in a resource group. Returns JSON string array of load balancer objects."""
    logger.info(f"Tool called: list_load_balancers({resource_group})")
    try:
        client = _get_client()
        return json.dumps(client.list_load_balancers_all(resource_group))
    except Exception as ex:
        logger.exception("list_load_balancers failed")
        return json.dumps({"error": str(ex)})


@mcp.tool()
def get_load_balancer(resource_group: str, name: str) -> str:
    """Return the load balancer JSON (as string)."""
    logger.info(f"Tool called: get_load_balancer({resource_group}, {name})")
    try:
        client = _get_client()
        lb = client.get_load_balancer_safe(resource_group, name)
    except Exception as ex:
        logger.exception("get_load_balancer failed")
        return json.dumps({"error": str(ex)})
    if lb is None:
        return json.dumps({"error": f"Load balancer {name} not found in resource group {resource_group}"})
    return json.dumps(lb)


def summarize_load_balancer(lb: dict) -> dict:
    props = lb.get("properties", {})
    return {
        "name": lb.get("name"),
        "id": lb.get("id"),
        "location": lb.get("location"),
        "provisioningState": props.get("provisioningState"),
        "frontends": [
            {"name": f.get("name"), "privateIPAddress": f.get("properties", {}).get("privateIPAddress")}
            for f in props.get("frontendIPConfigurations", [])
        ],
        "backendPools": [p.get("name") for p in props.get("backendAddressPools", [])],
        "rules": [
            {
                "name": r.get("name"),
                "protocol": r.get("properties", {}).get("protocol"),
                "frontendPort": r.get("properties", {}).get("frontendPort"),
                "backendPort": r.get("properties", {}).get("backendPort"),
                "idleTimeoutInMinutes": r.get("properties", {}).get("idleTimeoutInMinutes"),
            }
            for r in props.get("loadBalancingRules", [])
        ],
        "probes": [
            {
                "name": p.get("name"),
                "protocol": p.get("properties", {}).get("protocol"),
                "port": p.get("properties", {}).get("port"),
                "numberOfProbes": p.get("properties", {}).get("numberOfProbes"),
            }
            for p in props.get("probes", [])
        ],
        "inboundNatRules": [
            {
                "name": n.get("name"),
                "frontendPort": n.get("properties", {}).get("frontendPort"),
                "backendPort": n.get("properties", {}).get("backendPort"),
            }
            for n in props.get("inboundNatRules", [])
        ],
    }


@mcp.tool()
def get_load_balancer_summary(resource_group: str, name: str) -> str:
    """Convenience call: returns a small summary of a load balancer (frontends, rules, probes, NAT rules)."""
    logger.info(f"Tool called: get_load_balancer_summary({resource_group}, {name})")
    try:
        client = _get_client()
        lb = client.get_load_balancer_safe(resource_group, name)
    except Exception as ex:
        logger.exception("get_load_balancer_summary failed")
        return json.dumps({"error": str(ex)})
    if lb is None:
        return json.dumps({"error": f"Load balancer {name} not found in resource group {resource_group}"})
    return json.dumps(summarize_load_balancer(lb))


# ---------------------------------------------------------------------------
# Write / deploy / delete tools (require AZ_RUN_DEPLOY=true)
# ---------------------------------------------------------------------------

@mcp.tool()
def create_internal_load_balancer(resource_group: str, name: str, vnet_name: str, private_ip: str, subnet_name: str = manage_internal_lb.BACKEND_SUBNET, probe_count: int = 2) -> str:
    """Create an internal load balancer with the sample's rule, probe and NAT rules (guarded).

    The vnet and subnet must already exist in `resource_group`; `private_ip` must be a free address in the subnet.
    """
    logger.info(f"Tool called: create_internal_load_balancer({resource_group}, {name}, {vnet_name}/{subnet_name}, {private_ip})")
    if not _deploy_enabled():
        return _DEPLOY_DISABLED
    client = _get_client()
    try:
        body = manage_internal_lb.internal_lb_body(
            client, resource_group, name,
            frontend_name=name + "-BE",
            backend_pool_name=name + "-BAP",
            subnet_id=client.subnet_resource_id(resource_group, vnet_name, subnet_name),
            private_ip=private_ip,
            probe_count=probe_count,
        )
        lb = client.create_or_update_load_balancer(resource_group, name, body)
        return json.dumps(summarize_load_balancer(lb))
    except Exception as ex:
        logger.exception("create_internal_load_balancer failed")
        return json.dumps({"error": str(ex)})


@mcp.tool()
def set_load_balancing_rule_idle_timeout(resource_group: str, name: str, rule_name: str = manage_internal_lb.TCP_LOAD_BALANCING_RULE, minutes: int = manage_internal_lb.IDLE_TIMEOUT_MINUTES) -> str:
    """Set the TCP idle timeout (4-30 minutes) of a load balancing rule (guarded)."""
    logger.info(f"Tool called: set_load_balancing_rule_idle_timeout({resource_group}, {name}, {rule_name}, {minutes})")
    if not _deploy_enabled():
        return _DEPLOY_DISABLED
    client = _get_client()
    try:
        current = client.get_load_balancer(resource_group, name)
        lb = client.create_or_update_load_balancer(resource_group, name, azure_rest.set_rule_idle_timeout(current, rule_name, minutes))
        return json.dumps(summarize_load_balancer(lb))
    except Exception as ex:
        logger.exception("set_load_balancing_rule_idle_timeout failed")
        return json.dumps({"error": str(ex)})


@mcp.tool()
def delete_load_balancer(resource_group: str, name: str) -> str:
    """Delete a load balancer (guarded). Blocks until Azure reports completion."""
    logger.info(f"Tool called: delete_load_balancer({resource_group}, {name})")
    if not _deploy_enabled():
        return _DEPLOY_DISABLED
    client = _get_client()
    try:
        client.delete_load_balancer(resource_group, name)
        return json.dumps({"ok": True})
    except Exception as ex:
        logger.exception("delete_load_balancer failed")
        return json.dumps({"error": str(ex)})


@mcp.tool()
def run_internal_lb_sample() -> str:
    """Run the whole internal load balancer sample in a fresh resource group (guarded).

    Creates billable resources for the duration of the run; the resource group is deleted at the end.
    """
    logger.info("Tool called: run_internal_lb_sample()")
    if not _deploy_enabled():
        return _DEPLOY_DISABLED
    client = _get_client()
    try:
        return json.dumps({"ok": True, "result": manage_internal_lb.run_sample(client)})
    except Exception as ex:
        logger.exception("run_internal_lb_sample failed")
        return json.dumps({"error": str(ex)})


@mcp.tool()
def delete_resource_group(resource_group: str) -> str:
    """Delete a resource group and all resources in it (guarded)."""
    logger.info(f"Tool called: delete_resource_group({resource_group})")
    if not _deploy_enabled():
        return _DEPLOY_DISABLED
    client = _get_client()
    try:
        if not client.resource_group_exists(resource_group):
            return json.dumps({"error": f"Resource group {resource_group} not found"})
        client.delete_resource_group(resource_group)
        return json.dumps({"ok": True})
    except Exception as ex:
        logger.exception("delete_resource_group failed")
        return json.dumps({"error": str(ex)})


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format='%(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )
    logger.info(f"Starting MCP Server on {host}:{port} (transport={transport})...")
    try:
        if transport in ("streamable_http", "streamable-http", "http"):
            app = mcp.streamable_http_app()
            # Rewrite Host header to avoid MCP host validation issues
            app = HostRewriteMiddleware(app, host=f"127.0.0.1:{port}")
            logger.info("Serving streamable HTTP endpoint at /mcp")
            uvicorn.run(app, host=host, port=port)
        else:
            mcp.run(transport=transport)
    except Exception as e:
        logger.error(f"Server error: {str(e)}")
        sys.exit(1)
    finally:
        logger.info("Server terminated")


if __name__ == "__main__":
    main()
