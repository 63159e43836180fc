import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from courier.core.codegen import generate, prepare, register, supported_languages, GENERATORS, LABELS
from courier.core.errors import GenerationError, UnsupportedLanguageError
from courier.models import AuthConfig, GrpcRequest, HttpRequest, KeyValue, RequestBody

LANGUAGES = ["curl", "javascript-fetch", "javascript-axios", "python-requests", "python-httpx", "go", "php-curl"]


def _create_user():
    return HttpRequest(
        name="Create user",
        method="POST",
        url="https://api.test/users",
        params=[KeyValue(key="notify", value="yes")],
        headers=[KeyValue(key="X-Trace", value="1"), KeyValue(key="X-Old", value="0", enabled=False)],
        body=RequestBody(kind="json", content='{"name": "O\'Brien"}'),
        auth=AuthConfig(type="bearer", token="abc"),
    )


def _bodies():
    return [
        HttpRequest(),
        _create_user(),
        HttpRequest(method="POST", body=RequestBody(kind="form-data", form=[KeyValue(key="a", value='x"y')])),
        HttpRequest(method="POST", body=RequestBody(kind="x-www-form-urlencoded", form=[KeyValue(key="q", value="a b")])),
        HttpRequest(method="PUT", body=RequestBody(kind="binary", content="/tmp/upload.bin")),
    ]


def test_languages_are_listed_in_registration_order():
    assert [lang["id"] for lang in supported_languages()] == LANGUAGES
    assert supported_languages()[0] == {"id": "curl", "name": "cURL"}


def test_curl_output():
    expected = (
        "curl -X POST 'https://api.test/users?notify=yes' \\\n"
        "  -H 'Authorization: Bearer abc' \\\n"
        "  -H 'X-Trace: 1' \\\n"
        "  -H 'Content-Type: application/json' \\\n"
        "  --data-raw '{\"name\": \"O'\\''Brien\"}'"
    )
    assert generate(_create_user(), "curl") == expected


def test_default_request_generates_for_every_language():
    for language in LANGUAGES:
        code = generate(HttpRequest(), language)
        assert "GET" in code or "get" in code


@pytest.mark.parametrize("language", LANGUAGES)
def test_generation_is_deterministic(language):
    request = _create_user()
    assert generate(request, language, True) == generate(request, language, True)


@pytest.mark.parametrize("language", LANGUAGES)
def test_comments_add_one_line_and_change_nothing_else(language):
    for request in _bodies():
        plain = generate(request, language).splitlines()
        commented = generate(request, language, include_comments=True).splitlines()
        assert len(commented) == len(plain) + 1
        extra = [i for i, line in enumerate(commented) if i >= len(plain) or line != plain[i]][0]
        assert commented[:extra] + commented[extra + 1:] == plain


@pytest.mark.parametrize("language", ["python-requests", "python-httpx"])
def test_python_output_compiles(language):
    for request in _bodies():
        compile(generate(request, language, include_comments=True), "<generated>", "exec")


def test_disabled_headers_are_omitted_everywhere():
    for language in LANGUAGES:
        code = generate(_create_user(), language)
        assert "X-Trace" in code
        assert "X-Old" not in code


def test_api_key_in_query_lands_in_url():
    request = HttpRequest(url="https://api.test/x?a=1", auth=AuthConfig(type="api-key", key="key", value="s 1", add_to="query"))
    assert prepare(request).url == "https://api.test/x?a=1&key=s%201"


def test_oauth2_token_becomes_authorization_header():
    request = HttpRequest(url="https://api.test", auth=AuthConfig(type="oauth2", access_token="{{access}}"))
    assert prepare(request).headers == [("Authorization", "Bearer {{access}}")]
    assert "Authorization: Bearer {{access}}" in generate(request, "curl")


def test_placeholders_stay_readable():
    request = HttpRequest(url="{{host}}/users", params=[KeyValue(key="id", value="{{id}}")])
    assert prepare(request).url == "{{host}}/users?id={{id}}"


def test_go_imports_only_what_is_used():
    plain = generate(HttpRequest(), "go")
    assert '"strings"' not in plain
    assert '"os"' not in plain
    text = generate(_create_user(), "go")
    assert '\t"strings"' in text
    multipart = generate(_bodies()[2], "go")
    assert '"mime/multipart"' in multipart
    assert "writer.FormDataContentType()" in multipart


def test_php_comment_cannot_close_php_mode():
    code = generate(HttpRequest(name="a ?> b"), "php-curl", include_comments=True)
    assert "?>" not in code


def test_unknown_language_and_non_http_requests():
    with pytest.raises(UnsupportedLanguageError):
        generate(HttpRequest(), "cobol")
    with pytest.raises(GenerationError):
        generate(GrpcRequest(), "curl")


def test_register_adds_a_language():
    @register("test-upper", "Upper")
    def _upper(p, include_comments):
        return f"{p.method} {p.url}".upper()

    try:
        assert generate(HttpRequest(url="https://a.test"), "test-upper") == "GET HTTPS://A.TEST"
        assert supported_languages()[-1] == {"id": "test-upper", "name": "Upper"}
    finally:
        del GENERATORS["test-upper"]
        del LABELS["test-upper"]
