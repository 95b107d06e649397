#!/usr/bin/env python3

import sys
import re
import logging
import argparse

from typing import Dict, List, Any, Tuple

import botocore.exceptions

from .common import AWSSessionBase, target_selector

logger = logging.getLogger("ssm-forward.resolver")

INSTANCE_ID_RE = re.compile("^m?i-[a-f0-9]+$")


def is_instance_id(instance: str) -> bool:
    return bool(INSTANCE_ID_RE.match(instance))


class InstanceResolver(AWSSessionBase):
    def __init__(self, args: argparse.Namespace) -> None:
        super().__init__(args)

        # Create boto3 clients from session
        self.ssm_client = self.session.client("ssm")
        self.ec2_client = self.session.client("ec2")

    def get_list(self) -> Dict[str, Dict[str, Any]]:
        def _try_append(_list: list, _dict: dict, _key: str) -> None:
            if _key in _dict:
                _list.append(_dict[_key])

        items = {}

        # List instances from SSM
        logger.debug("Fetching SSM inventory")
        paginator = self.ssm_client.get_paginator("get_inventory")
        response_iterator = paginator.paginate(
            Filters=[
                {"Key": "AWS:InstanceInformation.ResourceType", "Values": ["EC2Instance", "ManagedInstance"], "Type": "Equal"},
                {"Key": "AWS:InstanceInformation.InstanceStatus", "Values": ["Terminated", "Stopped", "ConnectionLost"], "Type": "NotEqual"},
            ]
        )

        for inventory in response_iterator:
            for entity in inventory["Entities"]:
                logger.debug(entity)
                content = entity["Data"]["AWS:InstanceInformation"]["Content"][0]
                instance_id = content["InstanceId"]
                items[instance_id] = {
                    "InstanceId": instance_id,
                    "InstanceName": "",
                    "HostName": content.get("ComputerName", ""),
                    "Addresses": [content["IpAddress"]] if content.get("IpAddress") else [],
                }
                logger.debug("Added instance: %s: %r", instance_id, items[instance_id])

        # Only EC2 instances can be described, managed instances (mi-...) can't
        ec2_instance_ids = [instance_id for instance_id in items if instance_id.startswith("i-")]
        if not ec2_instance_ids:
            return items

        # Add attributes from EC2
        paginator = self.ec2_client.get_paginator("describe_instances")

        tries = 5
        while tries:
            # The SSM inventory sometimes returns instances that have been terminated
            # a short while ago which makes the following call fail
            # with InvalidInstanceID.NotFound exception. Remove the reported
            # instance ids and retry up to {tries} times. If still unsuccessful
            # return the SSM list without the EC2 details (names, public IPs).
            try:
                response_iterator = paginator.paginate(InstanceIds=ec2_instance_ids)
                for reservations in response_iterator:
                    for reservation in reservations["Reservations"]:
                        for instance in reservation["Instances"]:
                            instance_id = instance["InstanceId"]
                            if instance_id not in items:
                                continue

                            # Find instance IPs
                            items[instance_id]["Addresses"] = []
                            _try_append(items[instance_id]["Addresses"], instance, "PrivateIpAddress")
                            _try_append(items[instance_id]["Addresses"], instance, "PublicIpAddress")

                            # Find instance name from tag Name
                            for tag in instance.get("Tags", []):
                                if tag["Key"] == "Name" and tag["Value"]:
                                    items[instance_id]["InstanceName"] = tag["Value"]

                            logger.debug("Updated instance: %s: %r", instance_id, items[instance_id])
                return items

            except botocore.exceptions.ClientError as ex:
                if ex.response.get("Error", {}).get("Code", "") != "InvalidInstanceID.NotFound":
                    raise
                message = ex.response.get("Error", {}).get("Message", "")
                if not message.startswith("The instance ID") or not message.endswith("not exist"):
                    logger.warning("Unexpected InvalidInstanceID.NotFound message: %s", message)
                remove_instance_ids = re.findall("i-[0-9a-f]+", message)
                logger.debug("Removing non-existent InstanceIds: %s", remove_instance_ids)
                ec2_instance_ids = list(set(ec2_instance_ids) - set(remove_instance_ids))
                tries -= 1

        logger.warning("Unable to list instance details. Some instance names and IPs may be missing.")

        return items

    @staticmethod
    def _sorted(items: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(items.values(), key=lambda x: x.get("InstanceName") or x.get("HostName") or x["InstanceId"])

    def print_list(self) -> None:
        hostname_len = 1  # Minimum of 1 char, otherwise f-string below fails for empty hostnames
        instname_len = 1

        items_list = self._sorted(self.get_list())

        if not items_list:
            logger.warning("No instances registered in SSM!")
            return

        for item in items_list:
            hostname_len = max(hostname_len, len(item["HostName"]))
            instname_len = max(instname_len, len(item["InstanceName"]))

        for item in items_list:
            print(f"{item['InstanceId']:20}   {item['HostName']:{hostname_len}}   {item['InstanceName']:{instname_len}}   {' '.join(item['Addresses'])}")

    def resolve_instance(self, instance: str) -> Tuple[str, Dict[str, Any]]:
        # Is it a valid Instance ID?
        if is_instance_id(instance):
            return instance, {}

        # It is not - find it in the list
        instances = []

        items = self.get_list()
        for instance_id in items:
            item = items[instance_id]
            if instance.lower() in [item["HostName"].lower(), item["InstanceName"].lower()] + item["Addresses"]:
                instances.append(instance_id)

        if not instances:
            return "", {}

        if len(instances) > 1:
            logger.warning("Found %d instances for '%s': %s", len(instances), instance, " ".join(instances))
            logger.warning("Use INSTANCE_ID to connect to a specific one")
            sys.exit(1)

        # Found only one instance - return it
        return instances[0], items[instances[0]]

    def select_instance(self) -> str:
        """
        Let the user pick one of the SSM registered instances.
        """
        items_list = self._sorted(self.get_list())

        if not items_list:
            logger.warning("No instances registered in SSM!")
            sys.exit(1)

        targets = []
        for item in items_list:
            summary = f"{item['InstanceId']:20}  {item['InstanceName'] or item['HostName']}  {' '.join(item['Addresses'])}"
            targets.append({"instance_id": item["InstanceId"], "summary": summary.rstrip()})

        selected = target_selector("Instance ID           Name  Addresses", targets)
        return selected["instance_id"]
