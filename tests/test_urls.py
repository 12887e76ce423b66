import pytest
from pymongo.errors import OperationFailure

from shortlink.models import (
    DAY_MILLIS,
    ApiError,
    QrCode,
    ShortenedUrl,
    TargetType,
    UrlRequest,
    UrlSearchParams,
)
from shortlink.store import MemoryStore
from shortlink.urls import (
    CODE_ALPHABET,
    create_short_url,
    delete_short_url,
    generate_code,
    get_qr_svg,
    list_urls,
    list_user_urls,
    record_visit,
    resolve_redirect,
    short_url_for,
    url_analytics,
)


class _BrokenStore:
    def _fail(self, *args, **kwargs):
        raise OperationFailure("boom")

    find_url = insert_url = list_urls = find_qr = _fail
    increment_clicks = has_visitor = insert_visitor = _fail


@pytest.fixture
def store():
    return MemoryStore()


def _add(store, code, user_id=None, url="https://example.com/page", expires_at=None):
    store.insert_url(
        ShortenedUrl(
            original_url=url,
            short_code=code,
            created_at=1000,
            expires_at=expires_at,
            user_id=user_id,
        )
    )


def test_short_url_default_host(monkeypatch):
    monkeypatch.delenv("HOST", raising=False)
    assert short_url_for("abc") == "http://localhost:8080/r/abc"


def test_short_url_custom_host(monkeypatch):
    monkeypatch.setenv("HOST", "https://sho.example.com")
    assert short_url_for("xyz") == "https://sho.example.com/r/xyz"


@pytest.mark.parametrize("size", [1, 6, 21])
def test_generate_code_length_and_alphabet(size):
    code = generate_code(size)
    assert len(code) == size
    assert set(code) <= set(CODE_ALPHABET)


def test_create_with_custom_code(store, monkeypatch):
    monkeypatch.delenv("HOST", raising=False)
    response = create_short_url(
        store, UrlRequest(url="https://example.com/a", custom_code="mine"), "u1"
    )
    assert response.short_code == "mine"
    assert response.short_url == "http://localhost:8080/r/mine"
    assert response.user_id == "u1"
    assert response.expires_at is None
    assert store.find_url("mine").original_url == "https://example.com/a"


def test_create_random_code_and_expiry(store):
    response = create_short_url(store, UrlRequest(url="https://example.com", expires_in_days=2))
    assert len(response.short_code) == 6
    stored = store.find_url(response.short_code)
    assert stored.clicks == 0
    assert stored.expires_at - stored.created_at == 2 * DAY_MILLIS
    assert response.expires_at == stored.expires_at


def test_empty_custom_code_generates_random(store):
    response = create_short_url(store, UrlRequest(url="https://example.com", custom_code=""))
    assert len(response.short_code) == 6


def test_create_conflict(store):
    _add(store, "taken")
    with pytest.raises(ApiError) as info:
        create_short_url(store, UrlRequest(url="https://example.com", custom_code="taken"))
    assert info.value.status == 409
    assert info.value.body == {"error": "Custom code already in use"}


def test_database_failure_is_500():
    with pytest.raises(ApiError) as info:
        create_short_url(_BrokenStore(), UrlRequest(url="https://example.com", custom_code="c"))
    assert info.value.status == 500
    assert info.value.message.startswith("Database error")


def test_resolve_redirect(store):
    _add(store, "go", url="https://example.com/target")
    assert resolve_redirect(store, "go") == "https://example.com/target"


def test_resolve_missing(store):
    with pytest.raises(ApiError) as info:
        resolve_redirect(store, "nope")
    assert info.value.status == 404


def test_resolve_expired(store):
    _add(store, "old", expires_at=1)
    with pytest.raises(ApiError) as info:
        resolve_redirect(store, "old")
    assert info.value.status == 410
    assert info.value.body == {"error": "This URL has expired"}


def test_record_visit_counts_clicks_and_unique(store):
    _add(store, "v")
    assert record_visit(store, "v", "10.0.0.1", "agent", "https://example.com") is True
    assert record_visit(store, "v", "10.0.0.1") is False
    assert record_visit(store, "v", "10.0.0.2") is True
    assert store.find_url("v").clicks == 3
    assert store.count_visitors("v") == 2


def test_record_visit_swallows_errors():
    assert record_visit(_BrokenStore(), "v", None) is False


def test_list_urls_ownership_and_counts(store):
    _add(store, "a", user_id="u1")
    _add(store, "b", user_id="u2")
    record_visit(store, "a", "1.1.1.1")
    store.insert_qr(QrCode.create("a", "https://example.com/page", "<svg/>", TargetType.SHORTENED))
    entries = {e.short_code: e for e in list_urls(store, UrlSearchParams(), "u1")}
    assert set(entries) == {"a", "b"}
    assert entries["a"].owned_by_current_user is True
    assert entries["b"].owned_by_current_user is False
    assert entries["a"].unique_clicks == 1
    assert entries["a"].clicks == 1
    assert entries["a"].has_shortened_qr is True
    assert entries["a"].has_original_qr is False
    assert entries["a"].id is not None


def test_list_urls_owned_only_and_search(store):
    _add(store, "alpha", user_id="u1")
    _add(store, "beta", user_id="u2")
    owned = list_urls(store, UrlSearchParams(owned_only=True), "u1")
    assert [e.short_code for e in owned] == ["alpha"]
    found = list_urls(store, UrlSearchParams(search="BET"), None)
    assert [e.short_code for e in found] == ["beta"]
    everything = list_urls(store, UrlSearchParams(owned_only=True), None)
    assert len(everything) == 2


def test_list_user_urls(store):
    _add(store, "one", user_id="u1")
    _add(store, "two", user_id="u1")
    _add(store, "three", user_id="u2")
    result = list_user_urls(store, "u1", UrlSearchParams(search="tw"), "u1")
    assert [e.short_code for e in result] == ["two"]
    assert result[0].owned_by_current_user is True


def test_get_qr_svg(store):
    store.insert_qr(QrCode.create("c", "https://example.com", "<svg>o</svg>", TargetType.ORIGINAL))
    assert get_qr_svg(store, "c", "original") == "<svg>o</svg>"
    with pytest.raises(ApiError) as info:
        get_qr_svg(store, "c", None)
    assert info.value.status == 404


def test_url_analytics(store):
    _add(store, "an", user_id="u1")
    record_visit(store, "an", "1.2.3.4")
    qr = QrCode.create("an", "https://example.com/page", "<svg/>", TargetType.ORIGINAL)
    store.insert_qr(qr)
    stats = url_analytics(store, "an")
    assert stats.clicks == 1
    assert stats.unique_clicks == 1
    assert stats.has_original_qr is True
    assert stats.has_shortened_qr is False
    assert stats.original_qr_generated_at == qr.generated_at
    assert stats.shortened_qr_generated_at is None
    assert stats.user_id == "u1"


def test_url_analytics_missing(store):
    with pytest.raises(ApiError) as info:
        url_analytics(store, "none")
    assert info.value.status == 404
    assert info.value.body == {"error": "URL not found"}


def test_delete_short_url(store):
    _add(store, "d", user_id="u1")
    record_visit(store, "d", "1.1.1.1")
    store.insert_qr(QrCode.create("d", "https://example.com", "<svg/>", TargetType.SHORTENED))
    delete_short_url(store, "d", "u1")
    assert store.find_url("d") is None
    assert store.count_visitors("d") == 0
    assert store.count_qr("d", TargetType.SHORTENED) == 0


def test_delete_forbidden(store):
    _add(store, "d", user_id="u1")
    with pytest.raises(ApiError) as info:
        delete_short_url(store, "d", "u2")
    assert info.value.status == 403
    assert store.find_url("d") is not None


@pytest.mark.parametrize("user, code, status", [(None, "d", 500), ("u1", "missing", 404)])
def test_delete_errors(store, user, code, status):
    _add(store, "d", user_id="u1")
    with pytest.raises(ApiError) as info:
        delete_short_url(store, code, user)
    assert info.value.status == status