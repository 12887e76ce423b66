import pytest
from pymongo.errors import PyMongoError

from shortlink.models import (
    ApiError,
    CreateQrRequest,
    QrCode,
    QrSearchParams,
    RegenerateQrParams,
    ShortenedUrl,
    TargetType,
)
from shortlink.qr import (
    generate_direct_qr,
    list_qr_codes,
    list_user_qr_codes,
    regenerate_qr,
)
from shortlink.qrsvg import qr_svg
from shortlink.store import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


def _add_url(store, code="abc123", original="https://example.com/page", **kwargs):
    url = ShortenedUrl.create(original, code, **kwargs)
    store.insert_url(url)
    return url


def _add_qr(store, code, original, target=TargetType.SHORTENED, user_id=None, svg="<svg/>"):
    store.insert_qr(QrCode.create(code, original, svg, target, user_id))


class _BrokenStore:
    def find_url(self, code):
        raise PyMongoError("boom")

    def find_direct_qr(self, url):
        raise PyMongoError("boom")

    def list_qr(self, *args):
        raise PyMongoError("boom")


def test_regenerate_unknown_code_is_404(store):
    with pytest.raises(ApiError) as info:
        regenerate_qr(store, "nope", RegenerateQrParams())
    assert info.value.status == 404
    assert info.value.message == "URL not found"


def test_regenerate_expired_is_410(store):
    url = _add_url(store)
    store.delete_url  # keep store API untouched
    expired = ShortenedUrl(
        original_url=url.original_url,
        short_code="old",
        created_at=1,
        expires_at=2,
    )
    store.insert_url(expired)
    with pytest.raises(ApiError) as info:
        regenerate_qr(store, "old", RegenerateQrParams())
    assert info.value.status == 410
    assert info.value.body == {"error": "This QR code has expired"}


def test_regenerate_returns_existing_without_force(store):
    _add_url(store)
    _add_qr(store, "abc123", "https://example.com/page", svg="<svg>stored</svg>")
    assert regenerate_qr(store, "abc123", RegenerateQrParams()) == "<svg>stored</svg>"


def test_regenerate_shortened_uses_host(store, monkeypatch):
    monkeypatch.setenv("HOST", "http://short.example.com")
    _add_url(store)
    svg = regenerate_qr(store, "abc123", RegenerateQrParams())
    assert svg == qr_svg("http://short.example.com/r/abc123", 200)


def test_regenerate_original_target(store):
    _add_url(store)
    params = RegenerateQrParams(url_type="original")
    svg = regenerate_qr(store, "abc123", params)
    assert svg == qr_svg("https://example.com/page", 200)


def test_regenerate_without_stored_qr_does_not_insert(store):
    _add_url(store)
    regenerate_qr(store, "abc123", RegenerateQrParams())
    assert store.count_qr("abc123", TargetType.SHORTENED) == 0


def test_regenerate_force_replaces_stored_svg(store):
    _add_url(store)
    _add_qr(store, "abc123", "https://example.com/page", TargetType.ORIGINAL, svg="<svg>old</svg>")
    params = RegenerateQrParams(force=True, url_type="original")
    svg = regenerate_qr(store, "abc123", params)
    assert svg.startswith("<?xml")
    assert store.find_qr("abc123", TargetType.ORIGINAL).svg_content == svg


def test_regenerate_database_error_is_500():
    with pytest.raises(ApiError) as info:
        regenerate_qr(_BrokenStore(), "abc", RegenerateQrParams())
    assert info.value.status == 500
    assert info.value.message.startswith("Database error")


def test_direct_qr_is_stored(store):
    request = CreateQrRequest(url="https://example.com/direct")
    svg = generate_direct_qr(store, request, "user-1")
    assert svg == qr_svg("https://example.com/direct", 200)
    stored = store.find_direct_qr("https://example.com/direct")
    assert stored.short_code.startswith("direct-")
    assert len(stored.short_code) == len("direct-") + 8
    assert stored.user_id == "user-1"
    assert stored.target_type is TargetType.ORIGINAL
    assert stored.svg_content == svg


def test_direct_qr_honours_size(store):
    request = CreateQrRequest(url="https://example.com/direct", size=300)
    assert generate_direct_qr(store, request) == qr_svg("https://example.com/direct", 300)


def test_direct_qr_reuses_existing(store):
    first = generate_direct_qr(store, CreateQrRequest(url="https://example.com/a"))
    again = generate_direct_qr(store, CreateQrRequest(url="https://example.com/a", size=400))
    assert again == first
    assert len(store.list_qr(None, None, True, None)) == 1


def test_direct_qr_force_updates_in_place(store):
    generate_direct_qr(store, CreateQrRequest(url="https://example.com/a"))
    forced = generate_direct_qr(
        store, CreateQrRequest(url="https://example.com/a", size=400, force_regenerate=True)
    )
    assert forced == qr_svg("https://example.com/a", 400)
    codes = store.list_qr(None, None, True, None)
    assert len(codes) == 1
    assert codes[0].svg_content == forced


def test_direct_qr_too_long_is_500(store):
    request = CreateQrRequest(url="https://example.com/" + "a" * 3000)
    with pytest.raises(ApiError) as info:
        generate_direct_qr(store, request)
    assert info.value.status == 500
    assert info.value.message.startswith("QR code generation error")


def test_direct_qr_database_error_is_500():
    with pytest.raises(ApiError) as info:
        generate_direct_qr(_BrokenStore(), CreateQrRequest(url="https://example.com/"))
    assert info.value.status == 500


@pytest.fixture
def populated(store):
    _add_qr(store, "abc123", "https://example.com/one", TargetType.SHORTENED, "u1")
    _add_qr(store, "abc123", "https://example.com/one", TargetType.ORIGINAL, "u1")
    _add_qr(store, "xyz789", "https://example.com/two", TargetType.SHORTENED, "u2")
    _add_qr(store, "direct-1234abcd", "https://example.com/three", TargetType.ORIGINAL, "u2")
    return store


def test_list_all(populated):
    result = list_qr_codes(populated, QrSearchParams())
    assert len(result) == 4
    assert all(not item.owned_by_current_user for item in result)
    assert all(len(item.id) == 24 for item in result)


def test_list_search_is_case_insensitive(populated):
    result = list_qr_codes(populated, QrSearchParams(search="XYZ"))
    assert [item.short_code for item in result] == ["xyz789"]


def test_list_target_type_filter(populated):
    result = list_qr_codes(populated, QrSearchParams(target_type="original"))
    assert {item.short_code for item in result} == {"abc123", "direct-1234abcd"}
    assert all(item.target_type == "original" for item in result)


def test_list_invalid_target_type_is_ignored(populated):
    assert len(list_qr_codes(populated, QrSearchParams(target_type="bogus"))) == 4


def test_list_direct_only(populated):
    result = list_qr_codes(populated, QrSearchParams(direct_only=True))
    assert [item.short_code for item in result] == ["direct-1234abcd"]
    assert result[0].is_direct


def test_list_owned_only(populated):
    result = list_qr_codes(populated, QrSearchParams(owned_only=True), "u1")
    assert len(result) == 2
    assert all(item.owned_by_current_user for item in result)


def test_list_owned_only_without_user_returns_all(populated):
    assert len(list_qr_codes(populated, QrSearchParams(owned_only=True))) == 4


def test_list_marks_ownership(populated):
    result = list_qr_codes(populated, QrSearchParams(), "u2")
    owned = {item.short_code for item in result if item.owned_by_current_user}
    assert owned == {"xyz789", "direct-1234abcd"}


def test_list_user_qr_codes(populated):
    result = list_user_qr_codes(populated, "u2", QrSearchParams(), "u2")
    assert {item.short_code for item in result} == {"xyz789", "direct-1234abcd"}
    assert all(item.user_id == "u2" for item in result)


def test_list_user_qr_codes_with_filters(populated):
    params = QrSearchParams(search="example", target_type="shortened", direct_only=False)
    result = list_user_qr_codes(populated, "u2", params)
    assert [item.short_code for item in result] == ["xyz789"]
    assert not result[0].owned_by_current_user


def test_list_database_error_is_500():
    with pytest.raises(ApiError) as info:
        list_qr_codes(_BrokenStore(), QrSearchParams())
    assert info.value.status == 500