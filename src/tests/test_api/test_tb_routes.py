import pytest

from greenhouse_gateway.models.notification import NotificationType
from greenhouse_gateway.utils.exceptions import DeviceNotLinkedError, UpstreamError


def as_user(user_id: int) -> dict:
    return {"X-User-Id": str(user_id)}


FAN_ON = {"project": "farm", "gh": "gh1", "method": "set_fan_1_cmd", "params": 1}


async def audit_actions(state):
    return [row["action"] for row in reversed(await state.audit.repository.list())]


@pytest.mark.asyncio
async def test_operator_command_is_recorded_and_announced(gateway):
    ids, state = gateway.ids, gateway.state

    response = await gateway.http.post("/api/tb/rpc", json=FAN_ON, headers=as_user(ids.alice))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["message"] == "command sent"
    assert body["data"]["rpcResponse"] == {}
    gateway.upstream.send_rpc.assert_awaited_once_with("farm", "gh1", "set_fan_1_cmd", 1, None)

    rows, total = await state.db.control_history.list({})
    assert total == 1
    assert rows[0]["control_key"] == "fan_1"
    assert rows[0]["success"] is True
    assert rows[0]["user_id"] == ids.alice
    assert rows[0]["ip_address"] == "127.0.0.1"

    assert await state.db.notifications.count_for_user(ids.alice) == 0
    for user_id in (ids.admin, ids.bob, ids.vera):
        notifications = await state.db.notifications.list_for_user(user_id)
        assert [n.type for n in notifications] == [NotificationType.CONTROL_ACTION]
    assert await state.db.notifications.count_for_user(ids.olga) == 0

    assert await audit_actions(state) == ["RPC_SENT", "RPC_SUCCESS"]


@pytest.mark.asyncio
async def test_offline_device_is_refused(gateway):
    ids, state = gateway.ids, gateway.state
    gateway.upstream.is_device_online.return_value = False

    response = await gateway.http.post("/api/tb/rpc", json=FAN_ON, headers=as_user(ids.alice))

    assert response.status_code == 503
    assert response.json() == {"success": False, "error": "Device is offline"}
    gateway.upstream.send_rpc.assert_not_awaited()

    rows, total = await state.db.control_history.list({})
    assert total == 1
    assert rows[0]["success"] is False
    assert rows[0]["error_message"] == "Device offline"

    for user_id in (ids.admin, ids.alice, ids.bob, ids.vera, ids.olga):
        assert await state.db.notifications.count_for_user(user_id) == 0

    assert await audit_actions(state) == ["RPC_FAILED"]
    failed = (await state.audit.repository.list("RPC_FAILED"))[0]
    assert failed["detail"]["reason"] == "Device offline"


@pytest.mark.asyncio
async def test_gateway_timeout_is_absorbed(gateway):
    state = gateway.state
    gateway.upstream.send_rpc.side_effect = UpstreamError("ThingsBoard request failed", status=504)

    response = await gateway.http.post(
        "/api/tb/rpc",
        json={"project": "farm", "gh": "gh1", "method": "set_motor_2_status", "params": 2},
        headers=as_user(gateway.ids.bob)
    )

    assert response.status_code == 200
    assert response.json()["data"]["message"] == "command sent, awaiting device sync"
    assert response.json()["data"]["outcome"] == "SOFT_TIMEOUT"

    rows, _ = await state.db.control_history.list({})
    assert rows[0]["control_key"] == "motor_2"
    assert rows[0]["action"] == "reverse"
    assert rows[0]["success"] is True
    assert rows[0]["error_message"] is None


@pytest.mark.asyncio
async def test_hard_failure_returns_502(gateway):
    state = gateway.state
    gateway.upstream.send_rpc.side_effect = UpstreamError("ThingsBoard request failed with status 400", status=400)

    response = await gateway.http.post("/api/tb/rpc", json=FAN_ON, headers=as_user(gateway.ids.admin))

    assert response.status_code == 502
    assert response.json()["success"] is False
    rows, _ = await state.db.control_history.list({})
    assert rows[0]["success"] is False
    assert "status 400" in rows[0]["error_message"]
    assert await audit_actions(state) == ["RPC_SENT", "RPC_FAILED"]


@pytest.mark.asyncio
async def test_two_way_command_uses_caller_timeout(gateway):
    gateway.upstream.send_rpc.return_value = {"firmware": "1.4.2"}

    response = await gateway.http.post(
        "/api/tb/rpc",
        json={"project": "farm", "gh": "gh1", "method": "get_firmware_info", "timeout": 7000},
        headers=as_user(gateway.ids.alice)
    )

    assert response.status_code == 200
    assert response.json()["data"]["rpcResponse"] == {"firmware": "1.4.2"}
    gateway.upstream.send_rpc.assert_awaited_once_with("farm", "gh1", "get_firmware_info", None, 7000)


@pytest.mark.asyncio
async def test_rpc_access_rules(gateway):
    ids, http = gateway.ids, gateway.http

    assert (await http.post("/api/tb/rpc", json=FAN_ON)).status_code == 401
    assert (await http.post("/api/tb/rpc", json=FAN_ON, headers=as_user(ids.inactive))).status_code == 401
    assert (await http.post("/api/tb/rpc", json=FAN_ON, headers=as_user(ids.vera))).status_code == 403
    assert (await http.post("/api/tb/rpc", json=FAN_ON, headers=as_user(ids.olga))).status_code == 403

    response = await http.post("/api/tb/rpc", json={"project": "farm", "gh": "gh1"}, headers=as_user(ids.alice))
    assert response.status_code == 400
    assert response.json()["success"] is False

    response = await http.post("/api/tb/rpc", json={**FAN_ON, "gh": "gh9"}, headers=as_user(ids.alice))
    assert response.status_code == 404

    gateway.upstream.send_rpc.assert_not_awaited()


@pytest.mark.asyncio
async def test_device_status(gateway):
    response = await gateway.http.get(
        "/api/tb/device-status", params={"project": "farm", "gh": "gh1"}, headers=as_user(gateway.ids.vera)
    )
    assert response.json()["data"] == {"online": True, "status": "Online", "statusTh": "ออนไลน์"}

    gateway.upstream.is_device_online.return_value = False
    response = await gateway.http.get(
        "/api/tb/device-status", params={"project": "farm", "gh": "gh1"}, headers=as_user(gateway.ids.vera)
    )
    assert response.json()["data"]["status"] == "Offline"


@pytest.mark.asyncio
async def test_read_endpoints(gateway):
    upstream, headers = gateway.upstream, as_user(gateway.ids.bob)
    upstream.get_latest_telemetry.return_value = {"air_temp": [{"ts": 1, "value": "28.5"}]}
    upstream.get_attributes.return_value = {"fan_1_cmd": True}
    upstream.get_timeseries.return_value = {"air_temp": []}

    response = await gateway.http.get("/api/tb/latest", params={"project": "farm", "gh": "gh1", "keys": "air_temp"},
                                      headers=headers)
    assert response.json()["data"]["air_temp"][0]["value"] == "28.5"
    upstream.get_latest_telemetry.assert_awaited_with("farm", "gh1", ["air_temp"])

    response = await gateway.http.get("/api/tb/attributes", params={"project": "farm", "gh": "gh1"}, headers=headers)
    assert response.json()["data"] == {"fan_1_cmd": True}
    assert "motor_1_fw" in upstream.get_attributes.await_args.args[2]

    response = await gateway.http.get(
        "/api/tb/timeseries",
        params={"project": "farm", "gh": "gh1", "keys": "air_temp", "startTs": 1000, "endTs": 2000},
        headers=headers
    )
    assert response.status_code == 200

    upstream.get_attributes.side_effect = DeviceNotLinkedError("Greenhouse farm/gh2 has no linked device")
    response = await gateway.http.get("/api/tb/attributes", params={"project": "farm", "gh": "gh2"}, headers=headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_connection_check_requires_admin(gateway):
    gateway.upstream.test_connection.return_value = {"success": True, "message": "Connected to ThingsBoard"}

    response = await gateway.http.post("/api/tb/test-connection", json={"project": "farm"},
                                       headers=as_user(gateway.ids.alice))
    assert response.status_code == 403

    response = await gateway.http.post("/api/tb/test-connection", json={"project": "farm"},
                                       headers=as_user(gateway.ids.admin))
    assert response.json()["data"]["success"] is True


@pytest.mark.asyncio
async def test_server_error_is_not_absorbed(gateway):
    state = gateway.state
    body = '{"status":500,"message":"Internal error, rule chain timeout","errorCode":2,"timestamp":1709285041234}'
    gateway.upstream.send_rpc.side_effect = UpstreamError(
        "ThingsBoard request failed with status 500", status=500, body=body
    )

    response = await gateway.http.post("/api/tb/rpc", json=FAN_ON, headers=as_user(gateway.ids.alice))

    assert response.status_code == 502
    assert response.json()["success"] is False
    rows, total = await state.db.control_history.list({})
    assert total == 1
    assert rows[0]["success"] is False
    assert "status 500" in rows[0]["error_message"]
    assert await state.db.notifications.count_for_user(gateway.ids.bob) == 0
    assert await audit_actions(state) == ["RPC_SENT", "RPC_FAILED"]
