"""
Azure Network sample for managing internal load balancers.

- Create an internal load balancer that receives network traffic on
  port 1521 (Oracle SQL Node Port) and sends load-balanced traffic
  to two virtual machines
- Create NAT rules for SSH and TELNET access to virtual
  machines behind the load balancer
- Create a health probe

Then update the load balancer's TCP idle timeout, create a second
load balancer, list load balancers, remove one, and delete the
resource group holding everything.

Run: python manage_internal_lb.py (credentials from environment or .env)
"""
from typing import Optional, Dict, Any
import logging
import os
import random
import secrets
import sys

import azure_rest
from azure_client import AzureClient

HTTP_PROBE = "httpProbe"
TCP_LOAD_BALANCING_RULE = "tcpRule"
NAT_RULE_6000_TO_22_FOR_VM3 = "nat6000to22forVM3"
NAT_RULE_6001_TO_23_FOR_VM3 = "nat6001to23forVM3"
NAT_RULE_6002_TO_22_FOR_VM4 = "nat6002to22forVM4"
NAT_RULE_6003_TO_23_FOR_VM4 = "nat6003to23forVM4"
ORACLE_SQL_NODE_PORT = 1521
IDLE_TIMEOUT_MINUTES = 15

VNET_ADDRESS_SPACE = "172.16.0.0/16"
FRONTEND_SUBNET = "Front-end"
BACKEND_SUBNET = "Back-end"
SUBNETS = {
    FRONTEND_SUBNET: "172.16.1.0/24",
    BACKEND_SUBNET: "172.16.3.0/24",
}

# (name, frontend port, backend port): SSH and TELNET straight to each VM
NAT_RULES = [
    (NAT_RULE_6000_TO_22_FOR_VM3, 6000, 22),
    (NAT_RULE_6001_TO_23_FOR_VM3, 6001, 23),
    (NAT_RULE_6002_TO_22_FOR_VM4, 6002, 22),
    (NAT_RULE_6003_TO_23_FOR_VM4, 6003, 23),
]

DEFAULT_VM_SIZE = "Standard_D2as_v5"
DEFAULT_ADMIN_USERNAME = "azureuser"

name = "manage-internal-lb"
logger = logging.getLogger(name)


def random_name(prefix: str) -> str:
    return f"{prefix}{random.randint(0, 9999)}"


def generate_admin_password() -> str:
    # Azure wants 3 of: lower, upper, digit, special
    return "Aa1!" + secrets.token_urlsafe(12)


def internal_lb_body(client: AzureClient, resource_group: str, lb_name: str, frontend_name: str, backend_pool_name: str, subnet_id: str, private_ip: str, probe_count: int) -> Dict[str, Any]:
    """Body of the internal load balancer this sample creates (twice, with different address and probe count)."""
    return azure_rest.build_internal_load_balancer(
        lb_id=client.load_balancer_id(resource_group, lb_name),
        location=client.location,
        frontend_name=frontend_name,
        subnet_id=subnet_id,
        private_ip=private_ip,
        backend_pool_name=backend_pool_name,
        rule_name=TCP_LOAD_BALANCING_RULE,
        probe_name=HTTP_PROBE,
        port=ORACLE_SQL_NODE_PORT,
        probe_port=80,
        probe_path="/",
        probe_interval=10,
        probe_count=probe_count,
        nat_rules=NAT_RULES,
        idle_timeout=IDLE_TIMEOUT_MINUTES,
    )


def _log_load_balancer_plan() -> None:
    logger.info("- A private IP address")
    logger.info("- One backend address pool which contain network interfaces for the virtual\n"
                "  machines to receive 1521 network traffic from the load balancer")
    logger.info("- One load balancing rules for 1521 to map public ports on the load\n"
                "  balancer to ports in the backend address pool")
    logger.info("- One probe which contains HTTP health probe used to check availability\n"
                "  of virtual machines in the backend address pool")
    logger.info("- Two inbound NAT rules which contain rules that map a port on the load\n"
                "  balancer to a port for a specific virtual machine in the backend address pool\n"
                "  - this provides direct VM connectivity for SSH to port 22 and TELNET to port 23")


def run_sample(client: AzureClient, admin_username: Optional[str] = None, admin_password: Optional[str] = None, vm_size: Optional[str] = None) -> Dict[str, Any]:
    """Provision the internal load balancer topology, exercise it, and tear it down.

    Returns a summary with the resource names used and the load balancers
    that were listed before the second one was deleted.
    The resource group is deleted on the way out whether or not the run succeeded.
    """
    admin_username = admin_username or os.environ.get("AZ_ADMIN_USERNAME", DEFAULT_ADMIN_USERNAME)
    admin_password = admin_password or os.environ.get("AZ_ADMIN_PASSWORD") or generate_admin_password()
    vm_size = vm_size or os.environ.get("AZ_VM_SIZE", DEFAULT_VM_SIZE)

    rg_name = random_name("NetworkSampleRG")
    vnet_name = random_name("vnet")
    lb_name3 = random_name("balancer3-")
    lb_name4 = random_name("balancer4-")
    nic_name3 = random_name("nic3")
    nic_name4 = random_name("nic4")
    avail_set_name = random_name("av2")
    vm_name3 = random_name("lVM3")
    vm_name4 = random_name("lVM4")
    private_frontend_name = lb_name3 + "-BE"
    backend_pool_name = lb_name3 + "-BAP3"

    summary: Dict[str, Any] = {"resource_group": rg_name}
    rg_created = False
    try:
        logger.info("Creating resource group...")
        rg = client.create_resource_group(rg_name)
        rg_created = True
        logger.info("Created a resource group with name: %s", rg.get("name", rg_name))

        # =============================================================
        # Create a virtual network with a frontend and a backend subnets
        logger.info("Creating virtual network with a frontend and a backend subnets...")
        vnet = client.create_virtual_network(rg_name, vnet_name, [VNET_ADDRESS_SPACE], SUBNETS)
        backend_subnet_id = azure_rest.subnet_id(vnet, BACKEND_SUBNET)
        logger.info("Created a virtual network: %s", vnet.get("name", vnet_name))

        # =============================================================
        # Create an internal load balancer
        logger.info("Creating an internal facing load balancer with ...")
        _log_load_balancer_plan()
        body3 = internal_lb_body(client, rg_name, lb_name3, private_frontend_name, backend_pool_name, backend_subnet_id, "172.16.3.5", probe_count=2)
        lb3 = client.create_or_update_load_balancer(rg_name, lb_name3, body3)
        logger.info("Created a load balancer: %s", lb3.get("name", lb_name3))

        # =============================================================
        # Create two network interfaces in the backend subnet
        #  associate network interfaces to NAT rules, backend pools
        logger.info("Creating two network interfaces in the backend subnet ...")
        logger.info("- And associating network interfaces to backend pools and NAT rules")
        pool_id = azure_rest.load_balancer_child_id(client.load_balancer_id(rg_name, lb_name3), "backendAddressPools", backend_pool_name)
        nic3 = client.create_nic(
            rg_name, nic_name3, backend_subnet_id,
            backend_pool_ids=[pool_id],
            inbound_nat_rule_ids=[
                azure_rest.inbound_nat_rule_id(lb3, NAT_RULE_6000_TO_22_FOR_VM3),
                azure_rest.inbound_nat_rule_id(lb3, NAT_RULE_6001_TO_23_FOR_VM3),
            ],
        )
        logger.info("Created network interface: %s", nic3.get("name", nic_name3))
        nic4 = client.create_nic(
            rg_name, nic_name4, backend_subnet_id,
            backend_pool_ids=[pool_id],
            inbound_nat_rule_ids=[
                azure_rest.inbound_nat_rule_id(lb3, NAT_RULE_6002_TO_22_FOR_VM4),
                azure_rest.inbound_nat_rule_id(lb3, NAT_RULE_6003_TO_23_FOR_VM4),
            ],
        )
        logger.info("Created network interface: %s", nic4.get("name", nic_name4))

        # =============================================================
        # Create an availability set
        logger.info("Creating an availability set ...")
        avail_set = client.create_availability_set(rg_name, avail_set_name, fault_domains=2, update_domains=4)
        logger.info("Created first availability set: %s", avail_set.get("name", avail_set_name))

        # =============================================================
        # Create two virtual machines and assign network interfaces
        logger.info("Creating two virtual machines in the backend subnet ...")
        logger.info("- And assigning network interfaces")
        for vm_name, nic in ((vm_name3, nic3), (vm_name4, nic4)):
            logger.info("Creating a new virtual machine...")
            vm = client.create_or_update_vm(rg_name, vm_name, nic["id"], admin_username, admin_password, vm_size, availability_set_id=avail_set["id"])
            logger.info("Created virtual machine: %s", vm.get("name", vm_name))

        # =============================================================
        # Update a load balancer
        #  configure TCP idle timeout to 15 minutes
        logger.info("Updating the load balancer ...")
        current = client.get_load_balancer(rg_name, lb_name3)
        lb3 = client.create_or_update_load_balancer(rg_name, lb_name3, azure_rest.set_rule_idle_timeout(current, TCP_LOAD_BALANCING_RULE, IDLE_TIMEOUT_MINUTES))
        logger.info("Update the load balancer with a TCP idle timeout to %d minutes", IDLE_TIMEOUT_MINUTES)

        # =============================================================
        # Create another internal load balancer
        logger.info("Creating another internal facing load balancer with ...")
        _log_load_balancer_plan()
        body4 = internal_lb_body(client, rg_name, lb_name4, private_frontend_name, backend_pool_name, backend_subnet_id, "172.16.3.15", probe_count=4)
        lb4 = client.create_or_update_load_balancer(rg_name, lb_name4, body4)
        logger.info("Created another balancer: %s", lb4.get("name", lb_name4))

        # =============================================================
        # List load balancers
        logger.info("Walking through the list of load balancers")
        listed = [lb.get("name") for lb in client.list_load_balancers_all(rg_name)]
        for lb_name in listed:
            logger.info(lb_name)

        # =============================================================
        # Remove a load balancer
        logger.info("Deleting load balancer...")
        client.delete_load_balancer(rg_name, lb_name4)
        logger.info("Deleted load balancer %s", lb_name4)

        summary.update({
            "virtual_network": vnet_name,
            "load_balancers": listed,
            "deleted_load_balancer": lb_name4,
            "network_interfaces": [nic_name3, nic_name4],
            "availability_set": avail_set_name,
            "virtual_machines": [vm_name3, vm_name4],
        })
        return summary
    finally:
        if rg_created:
            try:
                logger.info("Deleting Resource Group...")
                client.delete_resource_group(rg_name)
                logger.info("Deleted Resource Group: %s", rg_name)
            except Exception:
                logger.exception("Failed to delete Resource Group %s", rg_name)
        else:
            logger.info("Did not create any resources in Azure. No clean up is necessary")


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )
    try:
        client = AzureClient.from_env()
        run_sample(client)
    except Exception:
        logger.exception("Internal load balancer sample failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
