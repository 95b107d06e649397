"""Tests for InstanceResolver, with the boto3 clients mocked out."""

import argparse
from unittest.mock import MagicMock, patch

import botocore.exceptions
import pytest

from ssm_forward.resolver import InstanceResolver, is_instance_id


def _entity(instance_id, computer_name="", ip_address=None):
    content = {"InstanceId": instance_id, "ComputerName": computer_name}
    if ip_address:
        content["IpAddress"] = ip_address
    return {"Data": {"AWS:InstanceInformation": {"Content": [content]}}}


def _instance(instance_id, name=None, private_ip=None, public_ip=None):
    instance = {"InstanceId": instance_id, "Placement": {"AvailabilityZone": "us-east-1a"}}
    if name:
        instance["Tags"] = [{"Key": "Name", "Value": name}]
    if private_ip:
        instance["PrivateIpAddress"] = private_ip
    if public_ip:
        instance["PublicIpAddress"] = public_ip
    return instance


@pytest.fixture
def resolver():
    with patch("ssm_forward.common.boto3.session.Session"):
        resolver = InstanceResolver(argparse.Namespace(profile=None, region="us-east-1"))

    # Session.client() would hand out the same mock for both services
    resolver.ssm_client = MagicMock()
    resolver.ec2_client = MagicMock()

    resolver.ssm_client.get_paginator.return_value.paginate.return_value = [
        {
            "Entities": [
                _entity("i-0aaa111", "ip-10-0-1-10.ec2.internal", "10.0.1.10"),
                _entity("i-0bbb222", "ip-10-0-2-20.ec2.internal", "10.0.2.20"),
                _entity("mi-0ccc333", "onprem-proxy", "192.168.1.5"),
            ]
        }
    ]
    resolver.ec2_client.get_paginator.return_value.paginate.return_value = [
        {
            "Reservations": [
                {"Instances": [_instance("i-0aaa111", "Bastion", "10.0.1.10", "3.80.1.1")]},
                {"Instances": [_instance("i-0bbb222", "db-proxy", "10.0.2.20")]},
            ]
        }
    ]
    return resolver


@pytest.mark.parametrize(
    "value, expected",
    [
        ("i-0abc123def456", True),
        ("mi-0123456789abcdef0", True),
        ("bastion", False),
        ("10.0.1.10", False),
        ("i-XYZ", False),
    ],
)
def test_is_instance_id(value, expected):
    assert is_instance_id(value) is expected


def test_get_list_merges_ec2_details(resolver):
    items = resolver.get_list()

    assert set(items) == {"i-0aaa111", "i-0bbb222", "mi-0ccc333"}
    assert items["i-0aaa111"]["InstanceName"] == "Bastion"
    assert items["i-0aaa111"]["Addresses"] == ["10.0.1.10", "3.80.1.1"]
    assert items["mi-0ccc333"]["HostName"] == "onprem-proxy"
    assert items["mi-0ccc333"]["Addresses"] == ["192.168.1.5"]

    # Managed instances are not sent to EC2
    paginate = resolver.ec2_client.get_paginator.return_value.paginate
    assert sorted(paginate.call_args.kwargs["InstanceIds"]) == ["i-0aaa111", "i-0bbb222"]


def test_get_list_drops_terminated_instances(resolver):
    not_found = botocore.exceptions.ClientError(
        {"Error": {"Code": "InvalidInstanceID.NotFound", "Message": "The instance ID 'i-0bbb222' does not exist"}},
        "DescribeInstances",
    )
    paginate = resolver.ec2_client.get_paginator.return_value.paginate
    paginate.side_effect = [
        not_found,
        [{"Reservations": [{"Instances": [_instance("i-0aaa111", "Bastion", "10.0.1.10")]}]}],
    ]

    items = resolver.get_list()

    assert paginate.call_count == 2
    assert paginate.call_args.kwargs["InstanceIds"] == ["i-0aaa111"]
    assert items["i-0aaa111"]["InstanceName"] == "Bastion"
    # Still listed, just without the EC2 details
    assert items["i-0bbb222"]["InstanceName"] == ""


def test_get_list_reraises_other_errors(resolver):
    denied = botocore.exceptions.ClientError(
        {"Error": {"Code": "UnauthorizedOperation", "Message": "You are not authorized"}},
        "DescribeInstances",
    )
    resolver.ec2_client.get_paginator.return_value.paginate.side_effect = denied

    with pytest.raises(botocore.exceptions.ClientError):
        resolver.get_list()


def test_resolve_instance_id_without_lookup(resolver):
    assert resolver.resolve_instance("i-0123abcd") == ("i-0123abcd", {})
    resolver.ssm_client.get_paginator.assert_not_called()


@pytest.mark.parametrize(
    "name, expected",
    [
        ("bastion", "i-0aaa111"),
        ("DB-PROXY", "i-0bbb222"),
        ("3.80.1.1", "i-0aaa111"),
        ("ip-10-0-2-20.ec2.internal", "i-0bbb222"),
        ("onprem-proxy", "mi-0ccc333"),
    ],
)
def test_resolve_instance_by_name(resolver, name, expected):
    instance_id, item = resolver.resolve_instance(name)
    assert instance_id == expected
    assert item["InstanceId"] == expected


def test_resolve_instance_not_found(resolver):
    assert resolver.resolve_instance("nonexistent") == ("", {})


def test_resolve_instance_ambiguous(resolver, caplog):
    ec2_pages = resolver.ec2_client.get_paginator.return_value.paginate.return_value
    ec2_pages[0]["Reservations"][1]["Instances"][0]["Tags"][0]["Value"] = "Bastion"

    with pytest.raises(SystemExit) as exc:
        resolver.resolve_instance("bastion")
    assert exc.value.code == 1
    assert "Found 2 instances for 'bastion'" in caplog.text


def test_print_list(resolver, capsys):
    resolver.print_list()

    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 3
    # Sorted by name, falling back to host name
    assert lines[0].startswith("i-0aaa111")
    assert lines[1].startswith("i-0bbb222")
    assert lines[2].startswith("mi-0ccc333")
    assert lines[0].rstrip().endswith("10.0.1.10 3.80.1.1")


def test_print_list_empty(resolver, caplog, capsys):
    resolver.ssm_client.get_paginator.return_value.paginate.return_value = [{"Entities": []}]

    resolver.print_list()

    assert capsys.readouterr().out == ""
    assert "No instances registered in SSM!" in caplog.text


def test_select_instance(resolver):
    with patch("ssm_forward.resolver.target_selector") as mock_selector:
        mock_selector.side_effect = lambda headers, targets: targets[1]
        assert resolver.select_instance() == "i-0bbb222"

    targets = mock_selector.call_args[0][1]
    assert [target["instance_id"] for target in targets] == ["i-0aaa111", "i-0bbb222", "mi-0ccc333"]
    assert "Bastion" in targets[0]["summary"]


def test_select_instance_nothing_registered(resolver):
    resolver.ssm_client.get_paginator.return_value.paginate.return_value = [{"Entities": []}]

    with pytest.raises(SystemExit) as exc:
        resolver.select_instance()
    assert exc.value.code == 1
