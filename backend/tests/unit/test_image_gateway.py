"""
Unit tests for the image builder gateway

Covers Docker error classification, the retry policy (2 retries, 2s/4s
backoff, never for auth errors) and the Docker SDK backed gateway against a
mocked client.
"""

from unittest.mock import MagicMock

import docker
import pytest
import requests

from deployment.image_gateway import (
    AUTH,
    PERMANENT,
    TRANSIENT,
    DockerImageGateway,
    classify_docker_error,
    classify_error_message,
)
from deployment.types import ImageRef
from errors import AuthFailed, BuildFailed, PushFailed
from secret_store import Secret, SecretSource


def api_error(status_code, message="error"):
    response = MagicMock()
    response.status_code = status_code
    return docker.errors.APIError(message, response=response)


def make_gateway(client, **kwargs):
    delays = []
    gateway = DockerImageGateway(client, sleep=delays.append, **kwargs)
    return gateway, delays


def credentials():
    return {
        "username": Secret.from_bytes("REGISTRY_USERNAME", SecretSource.ENV_VAR, b"ci-bot"),
        "password": Secret.from_bytes("REGISTRY_PASSWORD", SecretSource.ENV_VAR, b"registry-pw"),
    }


@pytest.mark.unit
class TestErrorClassification:
    """classify_docker_error / classify_error_message"""

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408, 429])
    def test_transient_status_codes(self, status):
        assert classify_docker_error(api_error(status)) == TRANSIENT

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_status_codes(self, status):
        assert classify_docker_error(api_error(status)) == AUTH

    @pytest.mark.parametrize("status", [400, 404, 409])
    def test_other_client_errors_are_permanent(self, status):
        assert classify_docker_error(api_error(status)) == PERMANENT

    def test_connection_errors_are_transient(self):
        assert classify_docker_error(requests.exceptions.ConnectionError("reset")) == TRANSIENT
        assert classify_docker_error(requests.exceptions.ReadTimeout("read timed out")) == TRANSIENT

    def test_dockerfile_error_is_permanent(self):
        error = docker.errors.BuildError("COPY failed: file not found in build context", [])
        assert classify_docker_error(error) == PERMANENT

    def test_network_loss_during_build_is_transient(self):
        error = docker.errors.BuildError("failed to fetch: connection reset by peer", [])
        assert classify_docker_error(error) == TRANSIENT

    def test_unknown_exception_is_permanent(self):
        assert classify_docker_error(ValueError("nope")) == PERMANENT

    @pytest.mark.parametrize("message,kind", [
        ("unauthorized: authentication required", AUTH),
        ("denied: requested access to the resource is denied", AUTH),
        ("received unexpected HTTP status: 502 Bad Gateway", TRANSIENT),
        ("toomanyrequests: rate limit exceeded", TRANSIENT),
        ("tag invalid: manifest tag did not match URI", PERMANENT),
        ("", PERMANENT),
    ])
    def test_stream_messages(self, message, kind):
        assert classify_error_message(message) == kind


@pytest.mark.unit
class TestDockerBuild:
    """DockerImageGateway.build"""

    def test_build_success(self, mock_docker_client):
        gateway, _ = make_gateway(mock_docker_client)

        result = gateway.build(ImageRef("be", "1", build_context="/src/be"))

        assert result.success is True
        assert result.sha256 == "sha256:0f1e2d3c4b5a"
        assert result.runtime_user == "app"
        mock_docker_client.images.build.assert_called_once_with(path="/src/be", tag="be:1", rm=True)

    def test_build_log_written(self, mock_docker_client, tmp_path):
        gateway, _ = make_gateway(mock_docker_client, log_dir=str(tmp_path))

        result = gateway.build(ImageRef("registry.example.com/be", "1"))

        assert result.log_ref is not None
        with open(result.log_ref, encoding="utf-8") as f:
            assert "Step 1/2" in f.read()

    def test_missing_user_reported_as_none(self, mock_docker_client):
        built = MagicMock()
        built.id = "sha256:abc"
        built.attrs = {'Config': {}}
        mock_docker_client.images.build.return_value = (built, iter([]))
        gateway, _ = make_gateway(mock_docker_client)

        assert gateway.build(ImageRef("be", "1")).runtime_user is None

    def test_dockerfile_error_not_retried(self, mock_docker_client):
        mock_docker_client.images.build.side_effect = docker.errors.BuildError("unknown instruction: FORM", [])
        gateway, delays = make_gateway(mock_docker_client)

        with pytest.raises(BuildFailed) as exc_info:
            gateway.build(ImageRef("be", "1"))

        assert exc_info.value.reason == "build-failed:be"
        assert mock_docker_client.images.build.call_count == 1
        assert delays == []

    def test_transient_error_retried_with_backoff(self, mock_docker_client):
        built, log = mock_docker_client.images.build.return_value
        mock_docker_client.images.build.side_effect = [api_error(503), api_error(500), (built, log)]
        gateway, delays = make_gateway(mock_docker_client)

        result = gateway.build(ImageRef("be", "1"))

        assert result.success is True
        assert delays == [2.0, 4.0]

    def test_retries_exhausted(self, mock_docker_client):
        mock_docker_client.images.build.side_effect = api_error(503)
        gateway, delays = make_gateway(mock_docker_client)

        with pytest.raises(BuildFailed):
            gateway.build(ImageRef("be", "1"))

        assert mock_docker_client.images.build.call_count == 3
        assert delays == [2.0, 4.0]

    def test_custom_retry_policy(self, mock_docker_client):
        mock_docker_client.images.build.side_effect = requests.exceptions.ConnectionError("refused")
        gateway, delays = make_gateway(mock_docker_client, max_retries=1, retry_base_delay=0.5)

        with pytest.raises(BuildFailed):
            gateway.build(ImageRef("be", "1"))

        assert delays == [0.5]


@pytest.mark.unit
class TestDockerPush:
    """DockerImageGateway.push"""

    def test_push_success(self, mock_docker_client):
        gateway, _ = make_gateway(mock_docker_client)

        result = gateway.push(ImageRef("registry.example.com/be", "1.0"), credentials())

        assert result.success is True
        assert result.digest == "sha256:feed"
        assert result.repository == "registry.example.com/be"
        mock_docker_client.images.push.assert_called_once_with(
            "registry.example.com/be",
            tag="1.0",
            auth_config={"username": "ci-bot", "password": "registry-pw"},
            stream=True,
            decode=True,
        )

    def test_anonymous_push(self, mock_docker_client):
        gateway, _ = make_gateway(mock_docker_client)

        gateway.push(ImageRef("be", "1.0"))

        assert mock_docker_client.images.push.call_args.kwargs["auth_config"] is None

    def test_stream_auth_error_not_retried(self, mock_docker_client):
        mock_docker_client.images.push.return_value = iter([
            {'status': 'The push refers to repository [registry.example.com/be]'},
            {'errorDetail': {'message': 'unauthorized: authentication required'},
             'error': 'unauthorized: authentication required'},
        ])
        gateway, delays = make_gateway(mock_docker_client)

        with pytest.raises(AuthFailed) as exc_info:
            gateway.push(ImageRef("registry.example.com/be", "1.0"), credentials())

        assert exc_info.value.reason == "push-failed:registry.example.com/be"
        assert mock_docker_client.images.push.call_count == 1
        assert delays == []

    def test_http_auth_error_not_retried(self, mock_docker_client):
        mock_docker_client.images.push.side_effect = api_error(401)
        gateway, delays = make_gateway(mock_docker_client)

        with pytest.raises(AuthFailed):
            gateway.push(ImageRef("be", "1.0"), credentials())

        assert delays == []

    def test_stream_transient_error_retried(self, mock_docker_client):
        mock_docker_client.images.push.side_effect = [
            iter([{'error': 'received unexpected HTTP status: 502 Bad Gateway'}]),
            iter([{'aux': {'Digest': 'sha256:second'}}]),
        ]
        gateway, delays = make_gateway(mock_docker_client)

        result = gateway.push(ImageRef("be", "1.0"), credentials())

        assert result.digest == "sha256:second"
        assert delays == [2.0]

    def test_permanent_stream_error(self, mock_docker_client):
        mock_docker_client.images.push.return_value = iter([
            {'errorDetail': {'message': 'tag invalid'}},
        ])
        gateway, delays = make_gateway(mock_docker_client)

        with pytest.raises(PushFailed) as exc_info:
            gateway.push(ImageRef("be", "1.0"), credentials())

        assert not isinstance(exc_info.value, AuthFailed)
        assert delays == []

    def test_credentials_not_in_error_message(self, mock_docker_client):
        mock_docker_client.images.push.side_effect = api_error(403, "denied")
        gateway, _ = make_gateway(mock_docker_client)

        with pytest.raises(AuthFailed) as exc_info:
            gateway.push(ImageRef("be", "1.0"), credentials())

        assert "registry-pw" not in str(exc_info.value)


@pytest.mark.unit
class TestDockerRemove:
    """DockerImageGateway.remove"""

    def test_remove(self, mock_docker_client):
        gateway, _ = make_gateway(mock_docker_client)

        gateway.remove(ImageRef("be", "1"))

        mock_docker_client.images.remove.assert_called_once_with("be:1", noprune=False)

    def test_remove_error_propagates(self, mock_docker_client):
        mock_docker_client.images.remove.side_effect = api_error(409, "image is being used")
        gateway, _ = make_gateway(mock_docker_client)

        with pytest.raises(docker.errors.APIError):
            gateway.remove(ImageRef("be", "1"))
