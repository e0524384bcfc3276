import copy
import logging
from unittest import mock

import pytest

import azure_rest
import manage_internal_lb
from azure_client import AzureClient

SUB = "sub"


def _provisioned_lb(resource_group, name, body):
    """What ARM hands back for a load balancer PUT: the body plus name and ids."""
    lb_id = azure_rest.load_balancer_id(SUB, resource_group, name)
    lb = copy.deepcopy(body)
    lb.update({"name": name, "id": lb_id, "etag": 'W/"1"'})
    for kind in ("frontendIPConfigurations", "backendAddressPools", "loadBalancingRules", "probes", "inboundNatRules"):
        for item in lb["properties"].get(kind, []):
            item["id"] = azure_rest.load_balancer_child_id(lb_id, kind, item["name"])
    return lb


@pytest.fixture
def client():
    client = mock.MagicMock(spec=AzureClient)
    client.location = "westus"
    client.load_balancer_id.side_effect = lambda rg, name: azure_rest.load_balancer_id(SUB, rg, name)
    client.create_resource_group.side_effect = lambda rg: {"name": rg, "id": azure_rest.resource_group_id(SUB, rg)}
    client.create_virtual_network.side_effect = lambda rg, name, prefixes, subnets: {
        "name": name,
        "properties": {"subnets": [{"name": s, "id": f"/vnets/{name}/subnets/{s}"} for s in subnets]},
    }
    balancers = {}

    def create_or_update_load_balancer(rg, name, body):
        balancers[name] = _provisioned_lb(rg, name, body)
        return balancers[name]

    client.create_or_update_load_balancer.side_effect = create_or_update_load_balancer
    client.get_load_balancer.side_effect = lambda rg, name: copy.deepcopy(balancers[name])
    client.list_load_balancers_all.side_effect = lambda rg: list(balancers.values())
    client.create_nic.side_effect = lambda rg, name, subnet, backend_pool_ids, inbound_nat_rule_ids: {"name": name, "id": f"/nics/{name}"}
    client.create_availability_set.side_effect = lambda rg, name, fault_domains, update_domains: {"name": name, "id": f"/availabilitySets/{name}"}
    client.create_or_update_vm.side_effect = lambda rg, name, nic_id, user, password, size, availability_set_id: {"name": name}
    return client


def _lb_puts(client):
    return [c.args for c in client.create_or_update_load_balancer.call_args_list]


def test_random_name():
    name = manage_internal_lb.random_name("balancer3-")
    assert name.startswith("balancer3-")
    assert name[len("balancer3-"):].isdigit()


def test_generated_password_meets_complexity():
    password = manage_internal_lb.generate_admin_password()
    assert any(c.islower() for c in password)
    assert any(c.isupper() for c in password)
    assert any(c.isdigit() for c in password)
    assert len(password) >= 12


def test_sample_builds_topology(client):
    summary = manage_internal_lb.run_sample(client, admin_username="azureuser", admin_password="Secret1!", vm_size="Standard_B1s")

    rg = summary["resource_group"]
    assert rg.startswith("NetworkSampleRG")
    [(_, vnet_name, prefixes, subnets)] = [c.args for c in client.create_virtual_network.call_args_list]
    assert prefixes == ["172.16.0.0/16"]
    assert subnets == {"Front-end": "172.16.1.0/24", "Back-end": "172.16.3.0/24"}
    backend_subnet = f"/vnets/{vnet_name}/subnets/Back-end"

    puts = _lb_puts(client)
    assert len(puts) == 3
    lb3_name, lb3_body = puts[0][1], puts[0][2]
    lb4_name, lb4_body = puts[2][1], puts[2][2]
    assert lb3_name.startswith("balancer3-")
    assert lb4_name.startswith("balancer4-")

    frontend3 = lb3_body["properties"]["frontendIPConfigurations"][0]
    assert frontend3["name"] == lb3_name + "-BE"
    assert frontend3["properties"]["privateIPAddress"] == "172.16.3.5"
    assert frontend3["properties"]["subnet"]["id"] == backend_subnet
    assert lb3_body["properties"]["backendAddressPools"] == [{"name": lb3_name + "-BAP3"}]
    assert lb3_body["properties"]["probes"][0]["properties"]["numberOfProbes"] == 2
    assert lb3_body["properties"]["loadBalancingRules"][0]["properties"]["frontendPort"] == 1521
    assert [n["name"] for n in lb3_body["properties"]["inboundNatRules"]] == [
        "nat6000to22forVM3", "nat6001to23forVM3", "nat6002to22forVM4", "nat6003to23forVM4",
    ]

    assert lb4_body["properties"]["frontendIPConfigurations"][0]["properties"]["privateIPAddress"] == "172.16.3.15"
    assert lb4_body["properties"]["probes"][0]["properties"]["numberOfProbes"] == 4
    assert lb4_body["properties"]["loadBalancingRules"][0]["properties"]["probe"]["id"].startswith(azure_rest.load_balancer_id(SUB, rg, lb4_name))

    assert summary["load_balancers"] == [lb3_name, lb4_name]
    assert summary["deleted_load_balancer"] == lb4_name
    client.delete_load_balancer.assert_called_once_with(rg, lb4_name)
    client.delete_resource_group.assert_called_once_with(rg)


def test_nics_bound_to_pool_and_their_own_nat_rules(client):
    summary = manage_internal_lb.run_sample(client, admin_username="azureuser", admin_password="Secret1!", vm_size="Standard_B1s")
    rg = summary["resource_group"]
    lb3_name = _lb_puts(client)[0][1]
    lb3_id = azure_rest.load_balancer_id(SUB, rg, lb3_name)
    pool_id = f"{lb3_id}/backendAddressPools/{lb3_name}-BAP3"

    nic3, nic4 = [c.kwargs for c in client.create_nic.call_args_list]
    assert nic3["backend_pool_ids"] == [pool_id]
    assert nic4["backend_pool_ids"] == [pool_id]
    assert nic3["inbound_nat_rule_ids"] == [f"{lb3_id}/inboundNatRules/nat6000to22forVM3", f"{lb3_id}/inboundNatRules/nat6001to23forVM3"]
    assert nic4["inbound_nat_rule_ids"] == [f"{lb3_id}/inboundNatRules/nat6002to22forVM4", f"{lb3_id}/inboundNatRules/nat6003to23forVM4"]


def test_vms_share_availability_set(client):
    summary = manage_internal_lb.run_sample(client, admin_username="azureuser", admin_password="Secret1!", vm_size="Standard_B1s")
    [avail_set_call] = client.create_availability_set.call_args_list
    assert avail_set_call.kwargs == {"fault_domains": 2, "update_domains": 4}
    vm_calls = client.create_or_update_vm.call_args_list
    assert [c.args[1] for c in vm_calls] == summary["virtual_machines"]
    nic3, nic4 = summary["network_interfaces"]
    assert [c.args[2] for c in vm_calls] == [f"/nics/{nic3}", f"/nics/{nic4}"]
    assert all(c.args[3:6] == ("azureuser", "Secret1!", "Standard_B1s") for c in vm_calls)
    assert {c.kwargs["availability_set_id"] for c in vm_calls} == {"/availabilitySets/" + summary["availability_set"]}


def test_update_resubmits_fetched_load_balancer(client):
    manage_internal_lb.run_sample(client, admin_username="azureuser", admin_password="Secret1!", vm_size="Standard_B1s")
    lb3_name = _lb_puts(client)[0][1]
    client.get_load_balancer.assert_called_once()
    assert client.get_load_balancer.call_args.args[1] == lb3_name
    update = _lb_puts(client)[1]
    assert update[1] == lb3_name
    # the update is built from what ARM returned, not from the first request body
    assert update[2]["etag"] == 'W/"1"'
    assert update[2]["properties"]["loadBalancingRules"][0]["properties"]["idleTimeoutInMinutes"] == 15


def test_resource_group_deleted_when_sample_fails(client):
    client.create_nic.side_effect = RuntimeError("quota exceeded")
    with pytest.raises(RuntimeError, match="quota exceeded"):
        manage_internal_lb.run_sample(client, admin_username="azureuser", admin_password="Secret1!")
    client.delete_resource_group.assert_called_once()
    client.create_or_update_vm.assert_not_called()


def test_no_cleanup_when_resource_group_not_created(client, caplog):
    client.create_resource_group.side_effect = RuntimeError("unauthorized")
    with caplog.at_level(logging.INFO, logger=manage_internal_lb.name):
        with pytest.raises(RuntimeError):
            manage_internal_lb.run_sample(client, admin_username="azureuser", admin_password="Secret1!")
    client.delete_resource_group.assert_not_called()
    assert "No clean up is necessary" in caplog.text


def test_cleanup_failure_is_logged(client, caplog):
    client.delete_resource_group.side_effect = RuntimeError("conflict")
    with caplog.at_level(logging.ERROR, logger=manage_internal_lb.name):
        summary = manage_internal_lb.run_sample(client, admin_username="azureuser", admin_password="Secret1!")
    assert summary["deleted_load_balancer"].startswith("balancer4-")
    assert "Failed to delete Resource Group" in caplog.text


def test_admin_settings_from_environment(client, monkeypatch):
    monkeypatch.setenv("AZ_ADMIN_USERNAME", "envuser")
    monkeypatch.setenv("AZ_ADMIN_PASSWORD", "EnvSecret1!")
    monkeypatch.setenv("AZ_VM_SIZE", "Standard_D4as_v5")
    manage_internal_lb.run_sample(client)
    vm_call = client.create_or_update_vm.call_args_list[0]
    assert vm_call.args[3:6] == ("envuser", "EnvSecret1!", "Standard_D4as_v5")


def test_main_reports_failure():
    with mock.patch.object(manage_internal_lb.AzureClient, "from_env", side_effect=RuntimeError("Missing Azure credentials")):
        assert manage_internal_lb.main() == 1


def test_main_success():
    with mock.patch.object(manage_internal_lb.AzureClient, "from_env") as from_env:
        with mock.patch.object(manage_internal_lb, "run_sample") as run_sample:
            assert manage_internal_lb.main() == 0
    run_sample.assert_called_once_with(from_env.return_value)
