from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import pytest
from botocore.exceptions import ClientError

from cirrus.errors import ShapeUnavailableError
from cirrus.providers.aws import EC2ClientFactory, EC2Provider
from cirrus.providers.base import LaunchParams

from tests.conftest import make_config, shape

pytestmark = [pytest.mark.unit]

LARGE = shape("c5.large", 2, 4, price=0.085)


def _client_error(code: str, op: str = "RunInstances") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, op)


class FakePaginator:
    def __init__(self, pages: list[dict[str, Any]]) -> None:
        self.pages = pages
        self.kwargs: dict[str, Any] = {}

    async def _iterate(self):
        for page in self.pages:
            yield page

    def paginate(self, **kwargs: Any):
        self.kwargs = kwargs
        return self._iterate()


class FakeEC2:
    def __init__(self) -> None:
        self.run_calls: list[dict[str, Any]] = []
        self.terminated: list[str] = []
        self.run_error: ClientError | None = None
        self.describe_sequence: list[dict[str, Any]] = []
        self.paginator = FakePaginator([])

    async def run_instances(self, **kwargs: Any) -> dict[str, Any]:
        self.run_calls.append(kwargs)
        if self.run_error is not None:
            raise self.run_error
        return {"Instances": [{"InstanceId": "i-0abc"}]}

    async def describe_instances(self, InstanceIds: list[str]) -> dict[str, Any]:  # noqa: N803
        inst = self.describe_sequence.pop(0) if len(self.describe_sequence) > 1 else self.describe_sequence[0]
        return {"Reservations": [{"Instances": [{"InstanceId": InstanceIds[0], **inst}]}]}

    async def terminate_instances(self, InstanceIds: list[str]) -> dict[str, Any]:  # noqa: N803
        self.terminated.extend(InstanceIds)
        return {}

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "describe_instances"
        return self.paginator


@pytest.fixture
def ec2() -> FakeEC2:
    return FakeEC2()


@pytest.fixture
def provider(ec2: FakeEC2) -> EC2Provider:
    @asynccontextmanager
    async def factory():
        yield ec2

    p = EC2Provider(EC2ClientFactory(factory), make_config())
    p.poll_interval = 0
    return p


def _params(**overrides: Any) -> LaunchParams:
    values: dict[str, Any] = {
        "ami": "ami-0abc",
        "security_group": "sg-0123",
        "disk_type": "gp3",
        "disk_space": 100,
    }
    values.update(overrides)
    return LaunchParams(**values)


class TestRunArgs:
    def test_on_demand(self, provider: EC2Provider) -> None:
        args = provider._run_args(LARGE, 0.085, _params(labels={"team": "data"}))
        assert args["InstanceType"] == "c5.large"
        assert args["ImageId"] == "ami-0abc"
        assert args["SecurityGroupIds"] == ["sg-0123"]
        assert args["BlockDeviceMappings"][0]["Ebs"]["VolumeSize"] == 100
        assert args["BlockDeviceMappings"][0]["Ebs"]["VolumeType"] == "gp3"
        assert args["InstanceInitiatedShutdownBehavior"] == "terminate"
        tags = args["TagSpecifications"][0]["Tags"]
        assert {"Key": "Name", "Value": "cirrus"} in tags
        assert {"Key": "team", "Value": "data"} in tags
        assert "InstanceMarketOptions" not in args

    def test_spot_bids_price(self, provider: EC2Provider) -> None:
        args = provider._run_args(LARGE, 0.085, _params(spot=True))
        assert args["InstanceMarketOptions"]["MarketType"] == "spot"
        assert args["InstanceMarketOptions"]["SpotOptions"]["MaxPrice"] == "0.0850"

    def test_optional_settings(self, provider: EC2Provider) -> None:
        args = provider._run_args(LARGE, 0.085, _params(
            immortal=True,
            instance_profile="arn:aws:iam::123:instance-profile/worker",
            key_name="ops",
            ssh_key="ssh-ed25519 AAAA",
        ))
        assert "InstanceInitiatedShutdownBehavior" not in args
        assert args["IamInstanceProfile"] == {"Arn": "arn:aws:iam::123:instance-profile/worker"}
        assert args["KeyName"] == "ops"
        assert "ssh-ed25519 AAAA" in args["UserData"]

    def test_profile_by_name(self, provider: EC2Provider) -> None:
        args = provider._run_args(LARGE, 0.085, _params(instance_profile="worker"))
        assert args["IamInstanceProfile"] == {"Name": "worker"}


class TestLaunch:
    @pytest.mark.asyncio
    async def test_waits_until_running(self, provider: EC2Provider, ec2: FakeEC2) -> None:
        ec2.describe_sequence = [
            {"State": {"Name": "pending"}},
            {"State": {"Name": "running"}},
            {"State": {"Name": "running"}, "PublicDnsName": "ec2-1.compute.amazonaws.com"},
        ]
        inst = await provider.launch(LARGE, 0.085, _params())
        assert inst.id == "i-0abc"
        assert inst.dns == "ec2-1.compute.amazonaws.com"
        assert inst.type == "c5.large"
        assert ec2.terminated == []

    @pytest.mark.asyncio
    async def test_capacity_error_is_shape_unavailable(self, provider: EC2Provider, ec2: FakeEC2) -> None:
        ec2.run_error = _client_error("InsufficientInstanceCapacity")
        with pytest.raises(ShapeUnavailableError) as exc_info:
            await provider.launch(LARGE, 0.085, _params())
        assert exc_info.value.instance_type == "c5.large"
        assert exc_info.value.region == "us-west-2"

    @pytest.mark.asyncio
    async def test_other_client_errors_propagate(self, provider: EC2Provider, ec2: FakeEC2) -> None:
        ec2.run_error = _client_error("UnauthorizedOperation")
        with pytest.raises(ClientError):
            await provider.launch(LARGE, 0.085, _params())

    @pytest.mark.asyncio
    async def test_capacity_termination_after_launch(self, provider: EC2Provider, ec2: FakeEC2) -> None:
        ec2.describe_sequence = [{
            "State": {"Name": "terminated"},
            "StateReason": {"Code": "Server.InsufficientInstanceCapacity", "Message": "no capacity"},
        }]
        with pytest.raises(ShapeUnavailableError):
            await provider.launch(LARGE, 0.085, _params(spot=True))
        assert ec2.terminated == ["i-0abc"]

    @pytest.mark.asyncio
    async def test_timeout_terminates(self, provider: EC2Provider, ec2: FakeEC2) -> None:
        provider.launch_timeout = -1
        ec2.describe_sequence = [{"State": {"Name": "pending"}}]
        with pytest.raises(TimeoutError):
            await provider.launch(LARGE, 0.085, _params())
        assert ec2.terminated == ["i-0abc"]


class TestDescribe:
    @pytest.mark.asyncio
    async def test_filters_by_id_and_ignores_strangers(self, provider: EC2Provider, ec2: FakeEC2) -> None:
        ec2.paginator = FakePaginator([
            {"Reservations": [{"Instances": [
                {"InstanceId": "i-1", "State": {"Name": "running"}},
                {"InstanceId": "i-stranger", "State": {"Name": "running"}},
            ]}]},
            {"Reservations": [{"Instances": [
                {"InstanceId": "i-2", "State": {"Name": "stopped"}},
            ]}]},
        ])
        states = await provider.describe(["i-2", "i-1", "i-3"])
        assert states == {"i-1": "running", "i-2": "stopped"}
        assert ec2.paginator.kwargs["Filters"] == [{"Name": "instance-id", "Values": ["i-1", "i-2", "i-3"]}]

    @pytest.mark.asyncio
    async def test_empty(self, provider: EC2Provider) -> None:
        assert await provider.describe([]) == {}

    @pytest.mark.asyncio
    async def test_terminate(self, provider: EC2Provider, ec2: FakeEC2) -> None:
        await provider.terminate(["i-1", "i-2"])
        assert ec2.terminated == ["i-1", "i-2"]
