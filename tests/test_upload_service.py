"""Tests for multipart, chunked and URL ingestion."""

import os
from unittest.mock import AsyncMock

import pytest

from factories import create_user
from uploadserver.database import get_db_connection
from uploadserver.exceptions import (
    ErrorKind,
    FileTooLargeError,
    PolicyViolationError,
    SecurityFindingError,
    SizeMismatchError,
    TooManyFragmentsError,
    UpstreamFailureError,
)
from uploadserver.hooks import FetchResult
from uploadserver.repositories.file_repository import FileRepository
from uploadserver.services.upload_service import (
    SCANNER_ERROR_MESSAGE,
    apply_url_proxy,
    parse_album_id,
    url_original_name,
)
from uploadserver.types import ChunkInfo, FinalizeRequest, IncomingFile, UploadContext

MIB = 1024 * 1024


def _count_files():
    with get_db_connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]


def _record_allocations(services):
    names = []
    allocate = services.allocator.allocate

    async def recording(length, extension):
        name = await allocate(length, extension)
        names.append(name)
        return name

    services.allocator.allocate = recording
    return names


@pytest.fixture
def incoming(stream):
    def _incoming(original, data, mimetype="application/octet-stream"):
        return IncomingFile(original=original, mimetype=mimetype, stream=stream(data))
    return _incoming


@pytest.fixture
def scanner():
    scanner = AsyncMock()
    scanner.scan_file.return_value = None
    return scanner


@pytest.fixture
def fetcher():
    fetcher = AsyncMock()
    fetcher.fetch.return_value = FetchResult(200, "OK", "image/png; charset=binary", b"remote bytes")
    return fetcher


class TestHelpers:
    @pytest.mark.parametrize("value,expected", [
        ("12", 12),
        (" 7 ", 7),
        (3, 3),
        (None, None),
        ("abc", None),
        (True, None),
        ("99999999999999999999", None),
        (str(2**63), None),
        (str(-(2**63) - 1), None),
        (str(2**63 - 1), 2**63 - 1),
        (str(-(2**63)), -(2**63)),
    ])
    def test_parse_album_id(self, value, expected):
        assert parse_album_id(value) == expected

    def test_url_original_name(self):
        assert url_original_name("https://example.com/a/cat.png?size=large#top") == "cat.png"
        assert url_original_name("https://example.com/dog.jpg") == "dog.jpg"

    def test_apply_url_proxy(self):
        url = "https://example.com/cat.png"
        assert apply_url_proxy(None, url) == url
        assert apply_url_proxy("https://proxy.example/?u={url}", url) == (
            "https://proxy.example/?u=https%3A%2F%2Fexample.com%2Fcat.png"
        )
        assert apply_url_proxy("https://proxy.example/{url-noprot}", url) == (
            "https://proxy.example/example.com%2Fcat.png"
        )


class TestIngestFiles:
    @pytest.mark.asyncio
    async def test_upload_returns_public_urls(self, make_services, incoming, uploads_dir):
        services = make_services()

        results = await services.uploads.ingest_files(
            UploadContext(ip="10.0.0.1"),
            [incoming("cat.png", b"meow", "image/png"), incoming("notes.txt", b"hello")],
        )

        assert len(results) == 2
        for result, ext in zip(results, (".png", ".txt")):
            assert result.name.endswith(ext)
            assert len(result.name) == 8 + len(ext)
            assert result.url == f"https://files.example.com/{result.name}"
            assert result.expirydate is None
        assert (uploads_dir / results[0].name).read_bytes() == b"meow"
        assert FileRepository.get_by_name(results[0].name).ip == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_client_identifier_length(self, make_services, incoming):
        services = make_services()

        results = await services.uploads.ingest_files(
            UploadContext(identifier_length="12"),
            [incoming("cat.png", b"meow")],
        )

        assert len(results[0].name) == 12 + len(".png")

    @pytest.mark.asyncio
    async def test_no_files(self, make_services):
        services = make_services()

        with pytest.raises(PolicyViolationError, match="No files."):
            await services.uploads.ingest_files(UploadContext(), [])

    @pytest.mark.asyncio
    async def test_too_many_files(self, make_services, incoming):
        services = make_services()

        with pytest.raises(PolicyViolationError, match="Maximum 20 files at a time."):
            await services.uploads.ingest_files(
                UploadContext(),
                [incoming(f"{i}.txt", b"x") for i in range(21)],
            )

    @pytest.mark.asyncio
    async def test_blacklisted_extension_writes_nothing(self, make_services, incoming, uploads_dir):
        services = make_services()

        with pytest.raises(PolicyViolationError) as exc_info:
            await services.uploads.ingest_files(
                UploadContext(),
                [incoming("ok.txt", b"fine"), incoming("setup.exe", b"MZ")],
            )

        assert exc_info.value.message == "EXE files are not permitted."
        assert list(uploads_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_empty_file_rejects_whole_request(self, make_services, incoming, uploads_dir):
        services = make_services()
        allocated = _record_allocations(services)

        with pytest.raises(PolicyViolationError, match="Empty files are not allowed."):
            await services.uploads.ingest_files(
                UploadContext(),
                [incoming("full.txt", b"data"), incoming("empty.txt", b"")],
            )

        assert list(uploads_dir.iterdir()) == []
        assert _count_files() == 0
        assert len(allocated) == 2
        assert all(name.split(".", 1)[0] not in services.allocator for name in allocated)

    @pytest.mark.asyncio
    async def test_oversized_file_is_removed(self, make_services, make_settings, incoming, uploads_dir):
        services = make_services(make_settings(max_size_mb=1))

        with pytest.raises(FileTooLargeError):
            await services.uploads.ingest_files(
                UploadContext(),
                [incoming("small.txt", b"ok"), incoming("big.bin", b"x" * (1_000_001))],
            )

        assert list(uploads_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_duplicate_upload_returns_existing_name(self, make_services, incoming, uploads_dir):
        services = make_services()

        first = await services.uploads.ingest_files(UploadContext(), [incoming("a.txt", b"same")])
        second = await services.uploads.ingest_files(UploadContext(), [incoming("b.txt", b"same")])

        assert second[0].name == first[0].name
        assert [p.name for p in uploads_dir.iterdir()] == [first[0].name]

    @pytest.mark.asyncio
    async def test_temporary_upload_reports_expiry(self, make_services, make_settings, incoming):
        services = make_services(make_settings(temporary_upload_ages=(24.0, 0.0)))

        results = await services.uploads.ingest_files(UploadContext(), [incoming("a.txt", b"data")])

        record = FileRepository.get_by_name(results[0].name)
        assert results[0].expirydate == record.timestamp + 24 * 3600

    @pytest.mark.asyncio
    async def test_permanent_age_rejected_when_not_allowed(self, make_services, make_settings, incoming):
        services = make_services(make_settings(temporary_upload_ages=(1.0, 24.0)))

        with pytest.raises(PolicyViolationError, match="Permanent uploads are not permitted."):
            await services.uploads.ingest_files(UploadContext(age="5"), [incoming("a.txt", b"data")])


class TestScanning:
    @pytest.mark.asyncio
    async def test_threat_rejects_upload(self, make_services, incoming, scanner, uploads_dir):
        scanner.scan_file.return_value = "Eicar-Test-Signature"
        services = make_services(scanner=scanner)

        with pytest.raises(SecurityFindingError) as exc_info:
            await services.uploads.ingest_files(UploadContext(), [incoming("a.txt", b"X5O!P%@AP")])

        assert exc_info.value.message == "Threat found: Eicar-Test-Signature."
        assert exc_info.value.kind == ErrorKind.SECURITY_FINDING
        assert list(uploads_dir.iterdir()) == []
        assert _count_files() == 0

    @pytest.mark.asyncio
    async def test_multiple_threats(self, make_services, incoming, scanner):
        scanner.scan_file.return_value = "Eicar"
        services = make_services(scanner=scanner)

        with pytest.raises(SecurityFindingError, match=r"^Threat found: Eicar, and more\.$"):
            await services.uploads.ingest_files(
                UploadContext(),
                [incoming("a.txt", b"one"), incoming("b.txt", b"two")],
            )

    @pytest.mark.asyncio
    async def test_engine_failure(self, make_services, incoming, scanner, uploads_dir):
        scanner.scan_file.side_effect = RuntimeError("clamd went away")
        services = make_services(scanner=scanner)

        with pytest.raises(UpstreamFailureError) as exc_info:
            await services.uploads.ingest_files(UploadContext(), [incoming("a.txt", b"data")])

        assert exc_info.value.message == SCANNER_ERROR_MESSAGE
        assert list(uploads_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_bypass_group_skips_scan(self, make_services, make_settings, incoming, scanner):
        services = make_services(make_settings(scan_bypass_group="vip"), scanner=scanner)
        user = create_user("alice", token="tok-alice", permission=5)

        await services.uploads.ingest_files(UploadContext(user=user), [incoming("a.txt", b"data")])

        scanner.scan_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_whitelisted_extension_and_size_limit(self, make_services, make_settings, incoming, scanner):
        settings = make_settings(scan_whitelist_extensions=(".txt",), scan_max_size=4)
        services = make_services(settings, scanner=scanner)

        results = await services.uploads.ingest_files(
            UploadContext(),
            [incoming("a.txt", b"skip"), incoming("b.png", b"too big"), incoming("c.png", b"tiny")],
        )

        scanner.scan_file.assert_awaited_once()
        assert scanner.scan_file.await_args.args[0].endswith(results[2].name)


class TestStripTags:
    @pytest.mark.asyncio
    async def test_stripped_size_is_recorded(self, make_services, make_settings, incoming):
        async def strip(path, extname):
            with open(path, "wb") as f:
                f.write(b"clean")

        stripper = AsyncMock()
        stripper.strip.side_effect = strip
        services = make_services(make_settings(strip_tags_enabled=True), stripper=stripper)

        results = await services.uploads.ingest_files(
            UploadContext(strip_tags="1"),
            [incoming("photo.jpg", b"jpeg with exif")],
        )

        assert FileRepository.get_by_name(results[0].name).size == 5

    @pytest.mark.asyncio
    async def test_strip_not_requested(self, make_services, make_settings, incoming):
        stripper = AsyncMock()
        services = make_services(make_settings(strip_tags_enabled=True), stripper=stripper)

        await services.uploads.ingest_files(UploadContext(strip_tags="0"), [incoming("photo.jpg", b"jpeg")])

        stripper.strip.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_strip_failure(self, make_services, make_settings, incoming, uploads_dir):
        stripper = AsyncMock()
        stripper.strip.side_effect = OSError("exiftool missing")
        services = make_services(make_settings(strip_tags_enabled=True), stripper=stripper)

        with pytest.raises(UpstreamFailureError, match="Could not strip tags from the uploaded files."):
            await services.uploads.ingest_files(UploadContext(strip_tags="1"), [incoming("photo.jpg", b"jpeg")])

        assert list(uploads_dir.iterdir()) == []


class TestChunkedUploads:
    async def _send(self, services, incoming, session_id, payloads, original="big.bin"):
        for index, payload in enumerate(payloads):
            result = await services.uploads.ingest_files(
                UploadContext(),
                [incoming(original, payload)],
                ChunkInfo(session_id=session_id, index=index, total_count=len(payloads)),
            )
            assert result is None

    @pytest.mark.asyncio
    async def test_fragments_are_combined(self, make_services, incoming, uploads_dir, chunks_dir):
        services = make_services()
        payloads = [bytes([i]) * MIB for i in range(3)]
        await self._send(services, incoming, "sess-1", payloads)

        results = await services.uploads.finish_chunks(
            UploadContext(),
            [FinalizeRequest(session_id="sess-1", original="big.bin", mimetype="application/octet-stream",
                             size=3 * MIB)],
        )

        path = uploads_dir / results[0].name
        assert os.path.getsize(path) == 3_145_728
        assert path.read_bytes() == b"".join(payloads)
        assert FileRepository.get_by_name(results[0].name).original == "big.bin"
        assert "sess-1" not in services.chunk_store
        assert not (chunks_dir / "sess-1").exists()

    @pytest.mark.asyncio
    async def test_declared_size_mismatch(self, make_services, incoming, uploads_dir, chunks_dir):
        services = make_services()
        await self._send(services, incoming, "sess-1", [b"a" * 100, b"b" * 100])

        with pytest.raises(SizeMismatchError) as exc_info:
            await services.uploads.finish_chunks(
                UploadContext(),
                [FinalizeRequest(session_id="sess-1", original="big.bin", size=123)],
            )

        assert exc_info.value.kind == ErrorKind.INTEGRITY_FAILURE
        assert list(uploads_dir.iterdir()) == []
        assert "sess-1" not in services.chunk_store
        assert not (chunks_dir / "sess-1").exists()

    @pytest.mark.asyncio
    async def test_single_fragment_is_not_finalizable(self, make_services, incoming, chunks_dir):
        services = make_services()
        await self._send(services, incoming, "sess-1", [b"only"])

        with pytest.raises(PolicyViolationError, match="An unexpected error occurred."):
            await services.uploads.finish_chunks(
                UploadContext(),
                [FinalizeRequest(session_id="sess-1", original="big.bin")],
            )

        assert "sess-1" not in services.chunk_store
        assert not (chunks_dir / "sess-1").exists()

    @pytest.mark.asyncio
    async def test_unknown_session_is_not_finalizable(self, make_services):
        services = make_services()

        with pytest.raises(PolicyViolationError):
            await services.uploads.finish_chunks(UploadContext(), [FinalizeRequest(session_id="nope")])

        with pytest.raises(PolicyViolationError):
            await services.uploads.finish_chunks(UploadContext(), [])

    @pytest.mark.asyncio
    async def test_invalid_batch_discards_every_named_session(self, make_services, incoming, chunks_dir):
        services = make_services()
        await self._send(services, incoming, "sess-1", [b"a", b"b"])

        with pytest.raises(PolicyViolationError, match="An unexpected error occurred."):
            await services.uploads.finish_chunks(
                UploadContext(),
                [
                    FinalizeRequest(session_id="sess-1", original="big.bin"),
                    FinalizeRequest(session_id="nope", original="big.bin"),
                    FinalizeRequest(session_id="../escape", original="big.bin"),
                    "not a request",
                ],
            )

        assert "sess-1" not in services.chunk_store
        assert not (chunks_dir / "sess-1").exists()
        assert len(services.chunk_store) == 0

    @pytest.mark.asyncio
    async def test_too_many_fragments(self, make_services, make_settings, incoming, chunks_dir):
        services = make_services(make_settings(max_size_mb=2))
        await self._send(services, incoming, "sess-1", [b"a", b"b", b"c"])

        with pytest.raises(TooManyFragmentsError):
            await services.uploads.finish_chunks(
                UploadContext(),
                [FinalizeRequest(session_id="sess-1", original="big.bin")],
            )

        assert "sess-1" not in services.chunk_store

    @pytest.mark.asyncio
    async def test_finalize_checks_extension(self, make_services, incoming):
        services = make_services()
        await self._send(services, incoming, "sess-1", [b"a", b"b"])

        with pytest.raises(PolicyViolationError, match="EXE files are not permitted."):
            await services.uploads.finish_chunks(
                UploadContext(),
                [FinalizeRequest(session_id="sess-1", original="setup.exe")],
            )

    @pytest.mark.asyncio
    async def test_chunks_disabled(self, make_services, make_settings, incoming):
        services = make_services(make_settings(chunk_size_mb=0))

        with pytest.raises(PolicyViolationError, match="Chunked uploads are disabled at the moment."):
            await services.uploads.ingest_files(
                UploadContext(),
                [incoming("big.bin", b"data")],
                ChunkInfo(session_id="sess-1", index=0, total_count=2),
            )

        with pytest.raises(PolicyViolationError, match="Chunked upload is disabled at the moment."):
            await services.uploads.finish_chunks(UploadContext(), [FinalizeRequest(session_id="sess-1")])

    @pytest.mark.asyncio
    async def test_session_id_without_index_is_plain_upload_when_disabled(
        self, make_services, make_settings, incoming
    ):
        services = make_services(make_settings(chunk_size_mb=0))

        results = await services.uploads.ingest_files(
            UploadContext(),
            [incoming("a.txt", b"data")],
            ChunkInfo(session_id="sess-1", index=None, total_count=None),
        )

        assert len(results) == 1


class TestIngestUrls:
    @pytest.mark.asyncio
    async def test_url_is_downloaded_and_stored(self, make_services, fetcher, uploads_dir):
        services = make_services(fetcher=fetcher)

        results = await services.uploads.ingest_urls(
            UploadContext(),
            ["https://example.com/cat.png?size=large"],
        )

        fetcher.fetch.assert_awaited_once_with("https://example.com/cat.png?size=large", 32_000_000)
        assert (uploads_dir / results[0].name).read_bytes() == b"remote bytes"
        record = FileRepository.get_by_name(results[0].name)
        assert record.original == "cat.png"
        assert record.type == "image/png"
        assert record.size == len(b"remote bytes")

    @pytest.mark.asyncio
    async def test_url_proxy(self, make_services, make_settings, fetcher):
        services = make_services(make_settings(url_proxy="https://proxy.example/?u={url}"), fetcher=fetcher)

        await services.uploads.ingest_urls(UploadContext(), ["https://example.com/cat.png"])

        assert fetcher.fetch.await_args.args[0] == "https://proxy.example/?u=https%3A%2F%2Fexample.com%2Fcat.png"

    @pytest.mark.asyncio
    async def test_non_200_fails_and_cleans_up(self, make_services, fetcher, uploads_dir):
        async def fetch(url, max_size):
            if "missing" in url:
                return FetchResult(404, "Not Found", "", b"")
            return FetchResult(200, "OK", "text/plain", b"fine")

        fetcher.fetch.side_effect = fetch
        services = make_services(fetcher=fetcher)
        allocated = _record_allocations(services)

        with pytest.raises(UpstreamFailureError, match="404 Not Found"):
            await services.uploads.ingest_urls(
                UploadContext(),
                ["https://example.com/ok.txt", "https://example.com/missing.txt"],
            )

        assert list(uploads_dir.iterdir()) == []
        assert _count_files() == 0
        assert allocated
        assert all(name.split(".", 1)[0] not in services.allocator for name in allocated)

    @pytest.mark.asyncio
    async def test_disabled(self, make_services, make_settings, fetcher):
        services = make_services(make_settings(url_max_size_mb=0), fetcher=fetcher)

        with pytest.raises(PolicyViolationError, match="Upload by URLs is disabled at the moment."):
            await services.uploads.ingest_urls(UploadContext(), ["https://example.com/cat.png"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("urls", [None, [], "https://example.com/cat.png", [1, 2]])
    async def test_missing_urls(self, make_services, fetcher, urls):
        services = make_services(fetcher=fetcher)

        with pytest.raises(PolicyViolationError, match='Missing "urls" property'):
            await services.uploads.ingest_urls(UploadContext(), urls)

    @pytest.mark.asyncio
    async def test_too_many_urls(self, make_services, fetcher):
        services = make_services(fetcher=fetcher)

        with pytest.raises(PolicyViolationError, match="Maximum 20 URLs at a time."):
            await services.uploads.ingest_urls(
                UploadContext(),
                [f"https://example.com/{i}.png" for i in range(21)],
            )

        fetcher.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_blacklisted_url_extension(self, make_services, fetcher):
        services = make_services(fetcher=fetcher)

        with pytest.raises(PolicyViolationError, match="EXE files are not permitted."):
            await services.uploads.ingest_urls(UploadContext(), ["https://example.com/setup.exe"])

        fetcher.fetch.assert_not_awaited()
