import pytest

from policies import HealthCheckPolicy, LaunchContext, RestartPolicy, SandboxPolicy


def test_launch_context_blocks_processes_in_strict_mode():
    ctx = LaunchContext(sandbox_policy=SandboxPolicy.STRICT)
    allowed, reason = ctx.can_launch(["/usr/bin/server"], container=False)
    assert allowed is False
    assert "container" in reason

    allowed, reason = ctx.can_launch(["docker", "run", "img"], container=True)
    assert allowed is True
    assert reason is None


def test_launch_context_allow_and_block_lists():
    ctx = LaunchContext(
        sandbox_policy=SandboxPolicy.RESTRICTED,
        allowed_commands=("weather-server",),
        blocked_commands=("--privileged",),
    )
    assert ctx.can_launch(["/opt/bin/weather-server", "--port", "9000"], container=False) == (True, None)

    allowed, reason = ctx.can_launch(["other-server"], container=False)
    assert allowed is False
    assert "allowed list" in reason

    allowed, reason = ctx.can_launch(["weather-server", "--privileged"], container=False)
    assert allowed is False
    assert "--privileged" in reason


def test_launch_context_rejects_empty_command():
    allowed, reason = LaunchContext(sandbox_policy=SandboxPolicy.NONE).can_launch([], container=False)
    assert allowed is False
    assert "empty" in reason


def test_health_policy_delays_back_off_and_cap():
    policy = HealthCheckPolicy(base_delay=0.5, max_delay=2.0, max_attempts=5)
    assert list(policy.delays()) == [0.5, 1.0, 2.0, 2.0]
    assert list(HealthCheckPolicy(max_attempts=1).delays()) == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"base_delay": 0},
        {"base_delay": 2.0, "max_delay": 1.0},
        {"max_attempts": 0},
    ],
)
def test_health_policy_validation(kwargs):
    with pytest.raises(ValueError):
        HealthCheckPolicy(**kwargs)


def test_restart_policy_validation():
    assert RestartPolicy(max_restarts=0).max_restarts == 0
    with pytest.raises(ValueError):
        RestartPolicy(max_restarts=-1)
    with pytest.raises(ValueError):
        RestartPolicy(window_seconds=0)
