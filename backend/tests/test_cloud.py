import io
import json
from unittest.mock import MagicMock

import pytest

from crawlmaster.services.cloud import Ec2Client, LambdaInvoker


@pytest.mark.asyncio
async def test_invoke_decodes_response_payload():
    client = MagicMock()
    client.invoke.return_value = {
        "StatusCode": 200,
        "Payload": io.BytesIO(json.dumps({"items": 3}).encode()),
    }
    regions = []

    def factory(region):
        regions.append(region)
        return client

    invoker = LambdaInvoker(client_factory=factory)

    result = await invoker.invoke("crawler-http", "eu-west-1", {"task_id": 1}, mode="RequestResponse")
    await invoker.invoke("crawler-http", "eu-west-1", {"task_id": 1})

    assert result.status_code == 200
    assert result.payload == {"items": 3}
    assert result.function_error is None
    # one client per region
    assert regions == ["eu-west-1"]
    kwargs = client.invoke.call_args_list[0].kwargs
    assert kwargs["InvocationType"] == "RequestResponse"
    assert json.loads(kwargs["Payload"]) == {"task_id": 1}


@pytest.mark.asyncio
async def test_invoke_reports_function_error():
    client = MagicMock()
    client.invoke.return_value = {
        "StatusCode": 200,
        "FunctionError": "Unhandled",
        "Payload": io.BytesIO(b"not json"),
    }
    invoker = LambdaInvoker(client_factory=lambda region: client)

    result = await invoker.invoke("crawler-http", "us-east-1", {})

    assert result.function_error == "Unhandled"
    assert result.payload == "not json"


@pytest.mark.asyncio
async def test_ec2_terminate_instance():
    client = MagicMock()
    client.terminate_instances.return_value = {"TerminatingInstances": []}
    ec2 = Ec2Client("us-west-1", client=client)

    await ec2.terminate_instance("i-0123456789")

    client.terminate_instances.assert_called_once_with(InstanceIds=["i-0123456789"])
