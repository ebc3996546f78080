import os
import stat

import pytest

from autostart.descriptor import resolve_descriptor
from drivers.schemas import DeploymentInput
from errors import ResolutionError
from tests.helpers import make_meta


def test_process_descriptor_resolves_executable_on_path():
    descriptor = resolve_descriptor(
        make_meta("svc"),
        {"command": "sh -c", "args": ["sleep 1"], "port": 9000, "health_path": "healthz", "env": {"MODE": "test"}},
    )

    assert os.path.basename(descriptor.argv[0]) == "sh"
    assert descriptor.argv[1:] == ("-c", "sleep 1")
    assert descriptor.health_kind == "http"
    assert descriptor.health_url == "http://127.0.0.1:9000/healthz"
    assert descriptor.env == {"MODE": "test"}
    assert descriptor.token is None
    assert descriptor.endpoint().url == "http://127.0.0.1:9000"


def test_relative_executable_is_resolved_against_cwd(tmp_path):
    script = tmp_path / "serve.sh"
    script.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)

    descriptor = resolve_descriptor(make_meta("svc"), {"command": "./serve.sh", "cwd": str(tmp_path)})

    assert descriptor.argv == (os.path.join(str(tmp_path), "./serve.sh"),)
    assert descriptor.health_kind == "process"
    assert descriptor.health_url is None


def test_auth_token_is_minted_per_resolution():
    deployment = DeploymentInput(command="sh", port=9000, auth_token_env="SVC_TOKEN")

    first = resolve_descriptor(make_meta("svc"), deployment)
    second = resolve_descriptor(make_meta("svc"), deployment)

    assert first.token and second.token
    assert first.token != second.token
    assert first.env["SVC_TOKEN"] == first.token
    assert first.endpoint().redacted()["token"] == "***"


def test_container_descriptor_keeps_image_and_args():
    descriptor = resolve_descriptor(
        make_meta("svc"),
        {"kind": "container", "image": "acme/weather:1.2", "args": ["--verbose"], "port": 8080, "container_port": 80},
    )

    assert descriptor.is_container
    assert descriptor.image == "acme/weather:1.2"
    assert descriptor.argv == ("--verbose",)
    assert descriptor.health_kind == "tcp"


@pytest.mark.parametrize(
    "deployment, message",
    [
        (None, "no deployment"),
        ({"kind": "process"}, "invalid deployment"),
        ({"command": "definitely-not-a-real-binary-xyz"}, "was not found"),
        ("sh", "unsupported deployment type"),
    ],
)
def test_unresolvable_deployments(deployment, message):
    with pytest.raises(ResolutionError, match=message) as excinfo:
        resolve_descriptor(make_meta("svc"), deployment)
    assert excinfo.value.state == "unresolved"
    assert excinfo.value.driver_id == "svc"
