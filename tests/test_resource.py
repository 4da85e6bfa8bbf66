"""Tests for Resource and resource detection."""

import pytest

from tracekit.errors import ConfigurationError, ResourceError
from tracekit.resource import (
    AWSResourceDetector,
    Resource,
    ResourceDetector,
    SDKResourceDetector,
    ServiceResourceDetector,
    create_resource,
    get_aggregated_resources,
)
from tracekit.version import __version__


class TestResource:
    """Tests for Resource."""

    def test_create(self):
        resource = Resource.create({"service.name": "hello-app", "service.version": "v1.0.0"})
        assert resource.get("service.name") == "hello-app"
        assert resource.get("missing", "default") == "default"

    def test_attributes_are_read_only(self):
        resource = Resource.create({"service.name": "hello-app"})
        with pytest.raises(TypeError):
            resource.attributes["service.name"] = "other"  # type: ignore[index]

    def test_merge_prefers_other(self):
        base = Resource.create({"service.name": "base", "host.name": "h1"})
        merged = base.merge(Resource.create({"service.name": "override"}))

        assert merged.get("service.name") == "override"
        assert merged.get("host.name") == "h1"
        assert base.get("service.name") == "base"

    def test_equality_and_hash(self):
        a = Resource.create({"k": "v", "n": 1})
        b = Resource.create({"n": 1, "k": "v"})
        assert a == b
        assert hash(a) == hash(b)

    def test_sequence_values(self):
        resource = Resource.create({"tags": ["a", "b"]})
        assert resource.get("tags") == ("a", "b")

    @pytest.mark.parametrize(
        "attributes",
        [
            {"": "v"},
            {"k": None},
            {"k": {"nested": 1}},
            {"k": ["a", 1]},
        ],
    )
    def test_invalid_attributes(self, attributes):
        with pytest.raises(ResourceError):
            Resource.create(attributes)

    def test_resource_error_is_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Resource.create({"k": object()})
        assert exc_info.value.key == "k"

    def test_to_dict(self):
        resource = Resource.create({"service.name": "hello-app"}, schema_url="https://example.com")
        assert resource.to_dict() == {
            "attributes": {"service.name": "hello-app"},
            "schema_url": "https://example.com",
        }


class TestDetectors:
    """Tests for resource detectors."""

    def test_sdk_detector(self):
        resource = SDKResourceDetector().detect()
        assert resource.get("telemetry.sdk.name") == "tracekit"
        assert resource.get("telemetry.sdk.version") == __version__
        assert resource.get("telemetry.sdk.language") == "python"

    def test_service_detector(self):
        environ = {
            "OTEL_SERVICE_NAME": "from-env",
            "OTEL_SERVICE_VERSION": "2.0",
            "OTEL_RESOURCE_ATTRIBUTES": "team=core, region = eu ,broken",
        }
        resource = ServiceResourceDetector(environ=environ).detect()

        assert resource.get("service.name") == "from-env"
        assert resource.get("service.version") == "2.0"
        assert resource.get("team") == "core"
        assert resource.get("region") == "eu"

    def test_service_detector_default_name(self):
        resource = ServiceResourceDetector("fallback", environ={}).detect()
        assert resource.get("service.name") == "fallback"

    def test_aws_detector(self):
        assert AWSResourceDetector(environ={}).detect() == Resource.empty()
        resource = AWSResourceDetector(environ={"AWS_DEFAULT_REGION": "us-west-2"}).detect()
        assert resource.get("cloud.provider") == "aws"
        assert resource.get("cloud.region") == "us-west-2"

    def test_failing_detector_is_skipped(self):
        class BrokenDetector(ResourceDetector):
            def detect(self):
                raise RuntimeError("metadata service down")

        resource = get_aggregated_resources([BrokenDetector(), SDKResourceDetector()])
        assert resource.get("telemetry.sdk.name") == "tracekit"

    def test_later_detectors_win(self):
        class Fixed(ResourceDetector):
            def __init__(self, value):
                self.value = value

            def detect(self):
                return Resource.create({"k": self.value})

        resource = get_aggregated_resources([Fixed("first"), Fixed("second")])
        assert resource.get("k") == "second"


class TestCreateResource:
    """Tests for create_resource."""

    def test_explicit_values_win(self):
        resource = create_resource(
            "hello-app",
            "v1.0.0",
            environment="staging",
            attributes={"team": "core"},
            detectors=[ServiceResourceDetector(environ={"OTEL_SERVICE_NAME": "from-env"})],
        )

        assert resource.get("service.name") == "hello-app"
        assert resource.get("service.version") == "v1.0.0"
        assert resource.get("deployment.environment") == "staging"
        assert resource.get("team") == "core"

    def test_default_detectors(self):
        resource = create_resource("hello-app")
        assert resource.get("telemetry.sdk.name") == "tracekit"
        assert isinstance(resource.get("process.pid"), int)

    def test_empty_service_name(self):
        with pytest.raises(ResourceError):
            create_resource("")
