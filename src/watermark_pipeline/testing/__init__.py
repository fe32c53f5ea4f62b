"""Testing utilities and fakes for the watermark pipeline."""

from .fakes import (
    FakeArchive,
    FakeAsyncS3Client,
    FakeCatalog,
    FakeCredentialStore,
    FakeFile,
    FakeImageServer,
    FakeJobStore,
    FakeLogger,
    FakeProduct,
    FakeS3Session,
    FakeSettingsStore,
    S3Object,
    create_test_image,
    create_test_logo,
    fake_svg_renderer,
)

__all__ = [
    "FakeArchive",
    "FakeAsyncS3Client",
    "FakeCatalog",
    "FakeCredentialStore",
    "FakeFile",
    "FakeImageServer",
    "FakeJobStore",
    "FakeLogger",
    "FakeProduct",
    "FakeS3Session",
    "FakeSettingsStore",
    "S3Object",
    "create_test_image",
    "create_test_logo",
    "fake_svg_renderer",
]
