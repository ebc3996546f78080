from errors import (
    BridgeCallError,
    BridgeUnavailable,
    BridgeUnavailableError,
    CapabilityUnsupportedError,
    DriverError,
    DriverUnavailableError,
    DuplicatePrefixError,
    ErrorType,
    HealthCheckTimeoutError,
    LaunchPolicyError,
    LaunchTimeoutError,
    NoCallFound,
    UnknownTargetError,
)


def test_error_type_values():
    assert ErrorType.FATAL.value == "fatal"
    assert ErrorType.RECOVERABLE.value == "recoverable"
    assert ErrorType.VALIDATION.value == "validation"
    assert ErrorType.NO_ACTION.value == "no_action"


def test_error_classes_carry_context():
    err = DriverError("oops", driver_id="weather-1", raw_input="{}")
    assert err.message == "oops"
    assert err.error_type == ErrorType.RECOVERABLE
    assert err.to_dict() == {
        "error": "DriverError",
        "error_type": "recoverable",
        "message": "oops",
        "driver_id": "weather-1",
        "raw_input": "{}",
    }

    unknown = UnknownTargetError("nope", raw_input="raw")
    assert unknown.target == "nope"
    assert unknown.error_type == ErrorType.VALIDATION
    assert "nope" in str(unknown)

    prefix = DuplicatePrefixError("wx", driver_id="b", existing_id="a")
    assert prefix.existing_id == "a"
    assert prefix.error_type == ErrorType.CONFIGURATION

    capability = CapabilityUnsupportedError("stream", driver_id="weather-1")
    assert capability.capability == "stream"


def test_no_call_found_is_not_a_failure_type():
    err = NoCallFound("just chatting")
    assert err.error_type == ErrorType.NO_ACTION
    assert err.raw_input == "just chatting"


def test_autostart_errors_are_bridge_unavailable():
    for cls in (HealthCheckTimeoutError, DriverUnavailableError, LaunchPolicyError, LaunchTimeoutError):
        err = cls("down", driver_id="svc", state="crashed")
        assert isinstance(err, BridgeUnavailableError)
        assert err.to_dict()["state"] == "crashed"
    assert BridgeUnavailable is BridgeUnavailableError
    assert LaunchPolicyError("no").error_type == ErrorType.FATAL


def test_bridge_call_error_reports_status():
    err = BridgeCallError("GET /x returned 503", driver_id="svc", status=503, body="busy")
    assert err.body == "busy"
    assert err.to_dict()["status"] == 503
    assert not isinstance(err, BridgeUnavailableError)
