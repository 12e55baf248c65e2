"""Tests for remote digest resolution (fleetdock/services/registry_client.py)."""

import json

import pytest

from conftest import fail, ok
from fleetdock.schemas.docker import Platform, parse_manifest
from fleetdock.services.docker_adapter import DockerCommandAdapter
from fleetdock.services.registry_client import (
    RegistryClient,
    extract_imagetools_digest,
    extract_skopeo_digest,
    select_manifest_digest,
)
from fleetdock.services.ssh_executor import SSHTarget

AMD64 = "sha256:" + "a" * 64
ARM64 = "sha256:" + "b" * 64
CONFIG = "sha256:" + "c" * 64

MANIFEST_LIST = json.dumps(
    {
        "schemaVersion": 2,
        "mediaType": "application/vnd.docker.distribution.manifest.list.v2+json",
        "manifests": [
            {"digest": AMD64, "platform": {"architecture": "amd64", "os": "linux"}},
            {"digest": ARM64, "platform": {"architecture": "arm64", "os": "linux", "variant": "v8"}},
        ],
    }
)

SINGLE_MANIFEST = json.dumps(
    {"schemaVersion": 2, "config": {"digest": CONFIG, "mediaType": "application/vnd.oci.image.config.v1+json"}}
)


@pytest.fixture
def client(fake_executor, session_factory):
    docker = DockerCommandAdapter(fake_executor, session_factory, base_delay=0, max_delay=0)
    return RegistryClient(docker, session_factory)


@pytest.fixture
def target():
    return SSHTarget(address="10.0.0.9", host_id=1)


class TestManifestSelection:
    """Digest selection from manifest documents."""

    def test_platform_match_in_list(self):
        doc = parse_manifest(MANIFEST_LIST)
        assert select_manifest_digest(doc, Platform(architecture="arm64", os="linux")) == ARM64

    def test_defaults_to_amd64_linux(self):
        assert select_manifest_digest(parse_manifest(MANIFEST_LIST)) == AMD64

    def test_unmatched_platform_takes_first_known(self):
        doc = parse_manifest(
            json.dumps(
                {
                    "manifests": [
                        {"digest": AMD64, "platform": {"architecture": "unknown", "os": "unknown"}},
                        {"digest": ARM64, "platform": {"architecture": "arm64", "os": "linux"}},
                    ]
                }
            )
        )
        assert select_manifest_digest(doc, Platform(architecture="s390x", os="linux")) == ARM64

    def test_single_manifest_uses_config_digest(self):
        assert select_manifest_digest(parse_manifest(SINGLE_MANIFEST)) == CONFIG

    def test_imagetools_priority(self):
        """Test config digest wins, then the first manifest, then a top-level digest."""
        assert extract_imagetools_digest(SINGLE_MANIFEST) == CONFIG
        assert extract_imagetools_digest(MANIFEST_LIST) == AMD64
        assert extract_imagetools_digest(json.dumps({"digest": ARM64})) == ARM64

    def test_imagetools_text_output(self):
        text = f"Name:      docker.io/library/nginx:latest\nMediaType: application/json\nDigest:    {ARM64}\n"
        assert extract_imagetools_digest(text) == ARM64

    def test_skopeo_output(self):
        assert extract_skopeo_digest(json.dumps({"Name": "nginx", "Digest": CONFIG})) == CONFIG
        assert extract_skopeo_digest("garbage") is None


class TestResolveRemoteDigest:
    """The fallback chain of resolve_remote_digest."""

    @pytest.mark.asyncio
    async def test_manifest_inspect_for_arm64(self, client, fake_executor, target):
        """Test the arm64 entry is pinned and resolved to its config digest."""
        fake_executor.on(rf"manifest inspect nginx@{ARM64}", ok(SINGLE_MANIFEST))
        fake_executor.on(r"manifest inspect nginx:latest", ok(MANIFEST_LIST))

        resolution = await client.resolve_remote_digest(
            target, "nginx:latest", Platform(architecture="arm64", os="linux")
        )

        assert resolution.digest == CONFIG
        assert resolution.equivalents == [ARM64]
        assert resolution.method == "manifest"
        assert resolution.error is None
        assert len(fake_executor.calls) == 2

    @pytest.mark.asyncio
    async def test_single_manifest_needs_one_call(self, client, fake_executor, target):
        fake_executor.on(r"manifest inspect ghcr.io/org/app:1.0", ok(SINGLE_MANIFEST))

        resolution = await client.resolve_remote_digest(target, "ghcr.io/org/app:1.0")

        assert resolution.digest == CONFIG
        assert resolution.equivalents == []
        assert len(fake_executor.calls) == 1

    @pytest.mark.asyncio
    async def test_unreadable_platform_manifest_moves_on(self, client, fake_executor, target):
        """Test a list whose platform entry cannot be read falls through to imagetools."""
        index = "sha256:" + "d" * 64
        fake_executor.on(rf"manifest inspect nginx@{AMD64}", fail("manifest unknown"))
        fake_executor.on(r"manifest inspect nginx:latest", ok(MANIFEST_LIST))
        fake_executor.on(r"imagetools inspect nginx:latest --raw", fail("unknown flag: --raw"))
        fake_executor.on(r"imagetools inspect nginx:latest'$", ok(f"Digest: {index}\n"))

        resolution = await client.resolve_remote_digest(target, "nginx:latest")

        assert resolution.digest == index
        assert resolution.method == "imagetools"

    @pytest.mark.asyncio
    async def test_imagetools_raw_list_is_pinned(self, client, fake_executor, target):
        fake_executor.on(r"manifest inspect nginx:1.25'", fail("no such manifest"))
        fake_executor.on(r"imagetools inspect nginx:1.25 --raw", ok(MANIFEST_LIST))
        fake_executor.on(rf"manifest inspect nginx@{AMD64}", ok(SINGLE_MANIFEST))

        resolution = await client.resolve_remote_digest(target, "nginx:1.25")

        assert resolution.digest == CONFIG
        assert resolution.equivalents == [AMD64]
        assert resolution.method == "imagetools"

    @pytest.mark.asyncio
    async def test_rate_limit_falls_back_to_mirror(self, client, fake_executor, target):
        """Test a throttled Docker Hub lookup is retried against the first mirror."""
        fake_executor.on(
            r"manifest inspect nginx:latest'",
            fail("toomanyrequests: You have reached your pull rate limit"),
        )
        fake_executor.on(rf"manifest inspect mirror.gcr.io/library/nginx@{AMD64}", ok(SINGLE_MANIFEST))
        fake_executor.on(r"manifest inspect mirror.gcr.io/library/nginx:latest", ok(MANIFEST_LIST))

        resolution = await client.resolve_remote_digest(target, "nginx:latest")

        assert resolution.digest == CONFIG
        assert resolution.equivalents == [AMD64]
        assert resolution.method == "mirror"
        assert resolution.rate_limited
        assert not fake_executor.ran("imagetools")

    @pytest.mark.asyncio
    async def test_custom_mirror_list(self, client, fake_executor, session_factory, target):
        from fleetdock.services.settings_service import SettingsService

        async with session_factory() as db:
            await SettingsService.set(db, "registry_mirrors", "hub.example.com")
        fake_executor.on(r"manifest inspect nginx:latest'", fail("429 Too Many Requests"))
        fake_executor.on(r"hub.example.com/library/nginx:latest", ok(SINGLE_MANIFEST))

        resolution = await client.resolve_remote_digest(target, "nginx:latest")

        assert resolution.digest == CONFIG
        assert not fake_executor.ran("mirror.gcr.io")

    @pytest.mark.asyncio
    async def test_no_mirror_for_other_registries(self, client, fake_executor, target):
        fake_executor.on(r"manifest inspect", fail("toomanyrequests"))
        fake_executor.on(r"imagetools", fail("toomanyrequests"))
        fake_executor.on(r"skopeo", fail("toomanyrequests"))

        resolution = await client.resolve_remote_digest(target, "ghcr.io/org/app:1.0")

        assert resolution.digest is None
        assert resolution.rate_limited
        assert not fake_executor.ran("mirror.gcr.io")

    @pytest.mark.asyncio
    async def test_imagetools_without_raw_flag(self, client, fake_executor, target):
        """Test older buildx without --raw is retried with plain output."""
        fake_executor.on(r"manifest inspect", fail("no such manifest: nginx:1.25"))
        fake_executor.on(r"imagetools inspect nginx:1.25 --raw", fail("unknown flag: --raw"))
        fake_executor.on(r"imagetools inspect nginx:1.25'$", ok(f"Name: nginx:1.25\nDigest: {CONFIG}\n"))

        resolution = await client.resolve_remote_digest(target, "nginx:1.25")

        assert resolution.digest == CONFIG
        assert resolution.method == "imagetools"

    @pytest.mark.asyncio
    async def test_skopeo_last_resort(self, client, fake_executor, target):
        fake_executor.on(r"manifest inspect", fail("manifest unknown"))
        fake_executor.on(r"imagetools", fail("buildx is not a docker command"))
        fake_executor.on(r"skopeo", ok(json.dumps({"Digest": ARM64})))

        resolution = await client.resolve_remote_digest(
            target, "nginx:latest", Platform(architecture="arm64", os="linux")
        )

        assert resolution.digest == ARM64
        assert resolution.method == "skopeo"
        skopeo = [c for c in fake_executor.commands if "skopeo" in c][0]
        assert "--override-arch arm64" in skopeo
        assert "--override-os linux" in skopeo
        assert "docker://nginx:latest" in skopeo

    @pytest.mark.asyncio
    async def test_all_methods_fail(self, client, fake_executor, target):
        """Test total failure is reported, not raised."""
        fake_executor.on(r"manifest inspect", fail("manifest unknown"))
        fake_executor.on(r"imagetools", fail("not found"))
        fake_executor.on(r"skopeo", fail("unable to find image"))

        resolution = await client.resolve_remote_digest(target, "nginx:missing")

        assert resolution.digest is None
        assert resolution.error == "not found"
        assert not resolution.rate_limited
