"""EC2 provider: launch single instances and report their lifecycle state."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

from botocore.exceptions import ClientError
from injector import Injector, inject
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from cirrus.catalog import InstanceShape
from cirrus.config import ClusterConfig
from cirrus.errors import ShapeUnavailableError
from cirrus.observability.logger import logger
from cirrus.providers.base import DEAD_STATES, LaunchParams
from cirrus.state import LiveInstance

from .clients import AWSModule, EC2ClientFactory

log = logger.bind(provider="aws")

# run_instances error codes meaning "this type, here, right now: no".
CAPACITY_ERROR_CODES = frozenset({
    "InsufficientInstanceCapacity",
    "InstanceLimitExceeded",
    "MaxSpotInstanceCountExceeded",
    "SpotMaxPriceTooLow",
    "Unsupported",
})

# StateReason codes of instances terminated right after launch for lack of capacity.
CAPACITY_STATE_REASONS = frozenset({
    "Server.InsufficientInstanceCapacity",
    "Server.SpotInstanceTermination",
})


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ClientError) and _error_code(exc) == "InvalidInstanceID.NotFound"


def _cloud_config(ssh_key: str) -> str:
    return f"#cloud-config\nssh_authorized_keys:\n  - {ssh_key}\n"


class EC2Provider:
    """Provider backed by the EC2 API.

    Example:
        >>> provider = EC2Provider.create(config)
        >>> instance = await provider.launch(shape, price, params)
    """

    @inject
    def __init__(self, ec2: EC2ClientFactory, config: ClusterConfig) -> None:
        self._ec2 = ec2
        self._region = config.region
        self.launch_timeout = 600.0
        self.poll_interval = 5.0

    @classmethod
    def create(cls, config: ClusterConfig) -> EC2Provider:
        return Injector([AWSModule(config)]).get(cls)

    @property
    def region(self) -> str:
        return self._region

    def _run_args(self, shape: InstanceShape, price: float, params: LaunchParams) -> dict[str, Any]:
        tags = [{"Key": "Name", "Value": params.tag}]
        tags.extend({"Key": k, "Value": v} for k, v in params.labels.items())
        args: dict[str, Any] = {
            "ImageId": params.ami,
            "InstanceType": shape.type,
            "MinCount": 1,
            "MaxCount": 1,
            "SecurityGroupIds": [params.security_group],
            "BlockDeviceMappings": [{
                "DeviceName": "/dev/xvda",
                "Ebs": {
                    "VolumeSize": params.disk_space,
                    "VolumeType": params.disk_type,
                    "DeleteOnTermination": True,
                },
            }],
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if not params.immortal:
            args["InstanceInitiatedShutdownBehavior"] = "terminate"
        if params.instance_profile:
            key = "Arn" if params.instance_profile.startswith("arn:") else "Name"
            args["IamInstanceProfile"] = {key: params.instance_profile}
        if params.key_name:
            args["KeyName"] = params.key_name
        if params.user_data:
            args["UserData"] = params.user_data
        elif params.ssh_key:
            args["UserData"] = _cloud_config(params.ssh_key)
        if params.spot:
            args["InstanceMarketOptions"] = {
                "MarketType": "spot",
                "SpotOptions": {
                    "MaxPrice": f"{price:.4f}",
                    "SpotInstanceType": "one-time",
                    "InstanceInterruptionBehavior": "terminate",
                },
            }
        return args

    async def launch(self, shape: InstanceShape, price: float, params: LaunchParams) -> LiveInstance:
        async with self._ec2() as ec2:
            try:
                response = await ec2.run_instances(**self._run_args(shape, price, params))
            except ClientError as e:
                code = _error_code(e)
                if code in CAPACITY_ERROR_CODES:
                    raise ShapeUnavailableError(shape.type, self._region, code) from e
                raise

            instance_id = response["Instances"][0]["InstanceId"]
            log.info(
                "Launched {iid} ({type}, spot={spot}, ${price:.4f}/hr)",
                iid=instance_id, type=shape.type, spot=params.spot, price=price,
            )
            try:
                described = await self._wait_running(ec2, instance_id, shape)
            except BaseException:
                await self._terminate_quietly(ec2, [instance_id])
                raise

        return LiveInstance(
            id=instance_id,
            dns=described.get("PublicDnsName") or described.get("PublicIpAddress", ""),
            type=shape.type,
            spot=described.get("InstanceLifecycle") == "spot",
        )

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_fixed(2),
        retry=retry_if_exception(_is_not_found),
        reraise=True,
    )
    async def _describe_one(self, ec2: Any, instance_id: str) -> dict[str, Any]:
        response = await ec2.describe_instances(InstanceIds=[instance_id])
        for reservation in response["Reservations"]:
            for inst in reservation["Instances"]:
                if inst["InstanceId"] == instance_id:
                    return inst
        raise RuntimeError(f"instance {instance_id} missing from describe response")

    async def _wait_running(self, ec2: Any, instance_id: str, shape: InstanceShape) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.launch_timeout

        while True:
            inst = await self._describe_one(ec2, instance_id)
            state = inst["State"]["Name"]
            address = inst.get("PublicDnsName") or inst.get("PublicIpAddress")
            if state == "running" and address:
                return inst

            if state in DEAD_STATES:
                reason = inst.get("StateReason", {})
                if reason.get("Code") in CAPACITY_STATE_REASONS:
                    raise ShapeUnavailableError(shape.type, self._region, reason.get("Message", ""))
                raise RuntimeError(f"instance {instance_id} {state}: {reason.get('Message', 'no reason')}")

            if loop.time() > deadline:
                raise TimeoutError(
                    f"instance {instance_id} not running after {self.launch_timeout:.0f}s (state {state})"
                )
            await asyncio.sleep(self.poll_interval)

    async def _terminate_quietly(self, ec2: Any, instance_ids: list[str]) -> None:
        try:
            await ec2.terminate_instances(InstanceIds=instance_ids)
        except ClientError as e:
            log.error("Failed to terminate {ids}: {err}", ids=instance_ids, err=e)

    async def describe(self, instance_ids: Sequence[str]) -> Mapping[str, str]:
        wanted = set(instance_ids)
        states: dict[str, str] = {}
        if not wanted:
            return states

        async with self._ec2() as ec2:
            paginator = ec2.get_paginator("describe_instances")
            async for page in paginator.paginate(
                Filters=[{"Name": "instance-id", "Values": sorted(wanted)}],
            ):
                for reservation in page["Reservations"]:
                    for inst in reservation["Instances"]:
                        # Unrelated instances occasionally show up in filtered results.
                        if inst["InstanceId"] in wanted:
                            states[inst["InstanceId"]] = inst["State"]["Name"]
        return states

    async def terminate(self, instance_ids: Sequence[str]) -> None:
        if not instance_ids:
            return
        async with self._ec2() as ec2:
            await ec2.terminate_instances(InstanceIds=list(instance_ids))
