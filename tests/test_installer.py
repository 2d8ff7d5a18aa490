"""Tests for the installer module."""

import threading

import pytest

from offlinecache.installer import InstallAborted, Installer, RetryPolicy
from offlinecache.manifest import AssetManifest, ManifestEntry
from offlinecache.fetcher import Fetcher, NetworkError
from offlinecache.models import GenerationState, Response
from offlinecache.store import CacheStore, StorageFull, StoreError

NO_BACKOFF = RetryPolicy(max_attempts=3, initial_backoff=0, max_backoff=0)


@pytest.fixture
def installer(store: CacheStore, fetcher) -> Installer:
    return Installer(store, fetcher, retry=NO_BACKOFF)


class TestRetryPolicy:
    """Tests for RetryPolicy delays."""

    def test_defaults(self) -> None:
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.delay(1) == pytest.approx(0.2)

    def test_doubles(self) -> None:
        policy = RetryPolicy(initial_backoff=0.2, max_backoff=5.0)
        assert [policy.delay(n) for n in (1, 2, 3)] == pytest.approx([0.2, 0.4, 0.8])

    def test_capped(self) -> None:
        policy = RetryPolicy(initial_backoff=1.0, max_backoff=5.0)
        assert policy.delay(10) == 5.0


class TestInstall:
    """Tests for successful installs."""

    def test_installs_and_seals(self, installer: Installer, store: CacheStore, fetcher, make_manifest) -> None:
        """Every must-cache entry is stored and the generation sealed."""
        fetcher.add("/index.html", body=b"<html>v1</html>")
        fetcher.add("/app.js", body=b"js-v1")

        generation = installer.install(make_manifest("v1", must_cache=["/index.html", "/app.js"]))

        assert generation.version_id == "v1"
        assert generation.state is GenerationState.SEALED
        assert store.keys("v1") == {"GET /index.html", "GET /app.js"}
        assert store.get("v1", "GET /app.js").body == b"js-v1"

    def test_does_not_activate(self, installer: Installer, store: CacheStore, fetcher, make_manifest) -> None:
        fetcher.add("/index.html")
        installer.install(make_manifest("v1", must_cache=["/index.html"]))
        assert store.current_pointer() is None

    def test_retries_transient_failures(self, installer: Installer, fetcher, make_manifest) -> None:
        """An entry that fails twice then succeeds is installed."""
        fetcher.script(
            "/app.js",
            [NetworkError("reset"), Response(status=502), Response(status=200, body=b"ok")],
        )

        generation = installer.install(make_manifest("v1", must_cache=["/app.js"]))

        assert generation.state is GenerationState.SEALED
        assert fetcher.count("/app.js") == 3

    def test_reinstall_is_noop(self, installer: Installer, fetcher, make_manifest) -> None:
        """Installing a sealed version returns it without fetching."""
        fetcher.add("/index.html")
        manifest = make_manifest("v1", must_cache=["/index.html"])
        first = installer.install(manifest)

        second = installer.install(manifest)

        assert second.version_id == first.version_id
        assert fetcher.count("/index.html") == 1

    def test_opportunistic_failure_skipped(
        self, installer: Installer, store: CacheStore, fetcher, make_manifest
    ) -> None:
        """A failing opportunistic entry does not block the install."""
        fetcher.add("/index.html")
        fetcher.fail("/icon.png")

        generation = installer.install(make_manifest("v1", must_cache=["/index.html"], opportunistic=["/icon.png"]))

        assert generation.state is GenerationState.SEALED
        assert store.keys("v1") == {"GET /index.html"}

    def test_empty_manifest(self, installer: Installer, make_manifest) -> None:
        assert installer.install(make_manifest("v0")).state is GenerationState.SEALED

    def test_keys_use_origin(self, store: CacheStore, fetcher, make_manifest) -> None:
        installer = Installer(store, fetcher, retry=NO_BACKOFF, origin="https://app.example")
        fetcher.add("/index.html")

        installer.install(make_manifest("v1", must_cache=["/index.html"]))

        assert store.keys("v1") == {"GET https://app.example/index.html"}

    def test_replaces_stale_partial_generation(
        self, installer: Installer, store: CacheStore, fetcher, make_manifest
    ) -> None:
        """A leftover INSTALLING generation is discarded and rebuilt."""
        manifest = make_manifest("v1", must_cache=["/index.html"])
        store.create_generation(manifest)
        store.put("v1", "GET /leftover", Response(status=200, body=b"x"))
        fetcher.add("/index.html")

        generation = installer.install(manifest)

        assert generation.state is GenerationState.SEALED
        assert store.keys("v1") == {"GET /index.html"}


class TestInstallAborted:
    """Tests for failed installs."""

    def test_required_entry_exhausts_retries(
        self, installer: Installer, store: CacheStore, fetcher, make_manifest
    ) -> None:
        """After max attempts the install aborts and leaves nothing behind."""
        fetcher.add("/index.html")
        fetcher.fail("/app.js")

        with pytest.raises(InstallAborted) as exc_info:
            installer.install(make_manifest("v2", must_cache=["/index.html", "/app.js"]))

        assert exc_info.value.version_id == "v2"
        assert exc_info.value.failed_keys == ("/app.js",)
        assert fetcher.count("/app.js") == 3
        assert store.get_generation("v2") is None
        assert not installer.is_installing("v2")

    def test_http_error_counts_as_failure(self, installer: Installer, store: CacheStore, fetcher, make_manifest) -> None:
        fetcher.add("/app.js", status=404)

        with pytest.raises(InstallAborted):
            installer.install(make_manifest("v2", must_cache=["/app.js"]))

        assert fetcher.count("/app.js") == 3
        assert store.get_generation("v2") is None

    def test_current_generation_untouched(
        self, installer: Installer, store: CacheStore, fetcher, make_manifest
    ) -> None:
        fetcher.add("/index.html", body=b"v1")
        installer.install(make_manifest("v1", must_cache=["/index.html"]))
        store.promote("v1")
        fetcher.fail("/index.html")

        with pytest.raises(InstallAborted):
            installer.install(make_manifest("v2", must_cache=["/index.html"]))

        assert store.current_pointer() == "v1"
        assert store.get("v1", "GET /index.html").body == b"v1"
        assert store.list_generations() == {"v1"}

    def test_storage_full_aborts(self, tmp_path, fetcher, make_manifest) -> None:
        """Running out of space aborts with the storage error as cause."""
        store = CacheStore(str(tmp_path / "small.db"), max_bytes=4)
        try:
            installer = Installer(store, fetcher, retry=NO_BACKOFF, max_workers=1)
            fetcher.add("/big.bin", body=b"0123456789")

            with pytest.raises(InstallAborted) as exc_info:
                installer.install(make_manifest("v1", must_cache=["/big.bin"]))

            assert isinstance(exc_info.value.__cause__, StorageFull)
            assert isinstance(exc_info.value.__cause__, StoreError)
            assert store.get_generation("v1") is None
        finally:
            store.close()

    def test_malformed_key_aborts_cleanly(self, store: CacheStore) -> None:
        """A key that cannot be turned into a URL aborts instead of leaving a partial generation."""
        fetcher = Fetcher(origin="https://app.example")
        try:
            installer = Installer(store, fetcher, retry=NO_BACKOFF)
            manifest = AssetManifest(version_id="v9", entries=(ManifestEntry(key="http://[bad"),))

            with pytest.raises(InstallAborted) as exc_info:
                installer.install(manifest)

            assert exc_info.value.failed_keys == ("http://[bad",)
            assert store.get_generation("v9") is None
            assert not installer.is_installing("v9")
        finally:
            fetcher.close()

    def test_unexpected_error_aborts(self, installer: Installer, store: CacheStore, fetcher, make_manifest) -> None:
        """Any unforeseen failure still discards the generation and chains the cause."""
        fetcher.add("/index.html")
        fetcher.fail("/app.js", RuntimeError("boom"))

        with pytest.raises(InstallAborted) as exc_info:
            installer.install(make_manifest("v2", must_cache=["/index.html", "/app.js"]))

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert store.get_generation("v2") is None

    def test_retry_after_abort(self, installer: Installer, fetcher, make_manifest) -> None:
        """A version that failed can be installed again once the network recovers."""
        manifest = make_manifest("v2", must_cache=["/app.js"])
        fetcher.fail("/app.js")
        with pytest.raises(InstallAborted):
            installer.install(manifest)

        fetcher.add("/app.js", body=b"ok")
        assert installer.install(manifest).state is GenerationState.SEALED


class TestConcurrentInstall:
    """Tests for joining in-flight installs."""

    def test_concurrent_calls_share_one_install(self, store: CacheStore, fetcher, make_manifest) -> None:
        """Parallel installs of one version fetch each entry exactly once."""
        fetcher.delay = 0.2
        fetcher.add("/index.html")
        fetcher.add("/app.js")
        installer = Installer(store, fetcher, retry=NO_BACKOFF)
        manifest = make_manifest("v1", must_cache=["/index.html", "/app.js"])

        results = []
        errors = []

        def run() -> None:
            try:
                results.append(installer.install(manifest))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        assert len(results) == 4
        assert results[0].version_id == "v1"
        assert all(result is results[0] for result in results)
        assert fetcher.count("/index.html") == 1
        assert fetcher.count("/app.js") == 1

    def test_caller_timeout_leaves_install_running(self, store: CacheStore, fetcher, make_manifest) -> None:
        """A caller that gives up does not cancel the shared install."""
        fetcher.delay = 0.3
        fetcher.add("/index.html")
        installer = Installer(store, fetcher, retry=NO_BACKOFF)
        manifest = make_manifest("v1", must_cache=["/index.html"])

        with pytest.raises(TimeoutError):
            installer.install(manifest, timeout=0.05)

        generation = installer.install(manifest, timeout=5)
        assert generation.state is GenerationState.SEALED
        assert fetcher.count("/index.html") == 1
