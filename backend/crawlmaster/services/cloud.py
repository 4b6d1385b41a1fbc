import asyncio
import json
import logging
from dataclasses import dataclass

import boto3
from botocore.config import Config as BotoConfig

from crawlmaster.config import settings

logger = logging.getLogger(__name__)


def _client(service: str, region: str):
    return boto3.client(
        service,
        region_name=region,
        aws_access_key_id=settings.aws_access_key or None,
        aws_secret_access_key=settings.aws_secret_key or None,
        # failed invocations must not be repeated behind our back
        config=BotoConfig(retries={"max_attempts": 0}, read_timeout=300),
    )


class Ec2Client:
    def __init__(self, region: str | None = None, client=None):
        self.region = region or settings.aws_region
        self._ec2 = client

    @property
    def ec2(self):
        if self._ec2 is None:
            self._ec2 = _client("ec2", self.region)
        return self._ec2

    async def associate_address(self, instance_id: str, allocation_id: str) -> dict:
        return await asyncio.to_thread(
            self.ec2.associate_address,
            AllocationId=allocation_id,
            InstanceId=instance_id,
        )

    async def terminate_instance(self, instance_id: str) -> dict:
        logger.warning("Terminating instance %s through the ec2 api", instance_id)
        return await asyncio.to_thread(
            self.ec2.terminate_instances, InstanceIds=[instance_id]
        )


@dataclass
class InvocationResult:
    status_code: int
    payload: object = None
    function_error: str | None = None


class LambdaInvoker:
    """Lambda clients are per region, workers are spread over regions."""

    def __init__(self, client_factory=None):
        self._client_factory = client_factory or (lambda region: _client("lambda", region))
        self._clients: dict[str, object] = {}

    def client(self, region: str):
        if region not in self._clients:
            self._clients[region] = self._client_factory(region)
        return self._clients[region]

    async def invoke(
        self, function_name: str, region: str, payload: dict, mode: str = "Event"
    ) -> InvocationResult:
        response = await asyncio.to_thread(
            self.client(region).invoke,
            FunctionName=function_name,
            InvocationType=mode,
            Payload=json.dumps(payload, default=str).encode(),
        )
        body = response.get("Payload")
        data = None
        if body is not None:
            raw = body.read()
            if raw:
                try:
                    data = json.loads(raw)
                except ValueError:
                    data = raw.decode(errors="replace")
        return InvocationResult(
            status_code=response.get("StatusCode", 0),
            payload=data,
            function_error=response.get("FunctionError"),
        )
