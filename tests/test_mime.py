import pytest

from exporterlib import mime


def test_parse_content_type():
    assert mime.parse_content_type("application/json") == ("application", "json", {})
    assert mime.parse_content_type('Text/HTML; charset="UTF-8"') == ("text", "html", {"charset": "UTF-8"})
    assert mime.parse_content_type("application/json;") == ("application", "json", {})


def test_parse_content_type_quoted_parameters():
    assert mime.parse_content_type('application/json; profile="a;b"') == ("application", "json", {"profile": "a;b"})
    assert mime.parse_content_type('text/html; title="say \\"hi\\""; charset=utf-8') == (
        "text",
        "html",
        {"title": 'say "hi"', "charset": "utf-8"},
    )
    # parameters never make a valid media type unparsable
    assert mime.parse_content_type("text/html; charset") == ("text", "html", {})


@pytest.mark.parametrize("header", [None, "", "   ", "json", "application/", "/json", "a/b/c", "text/ht ml"])
def test_parse_content_type_rejects(header):
    with pytest.raises(ValueError):
        mime.parse_content_type(header)


def test_normalize_token():
    assert mime.normalize_token("json") == "json"
    assert mime.normalize_token(" JSON ") == "json"
    assert mime.normalize_token("application/json") == "json"
    assert mime.normalize_token("text/html; charset=utf-8") == "html"
    with pytest.raises(ValueError):
        mime.normalize_token("js on")


def test_media_type_tokens():
    assert mime.media_type_tokens("json") == ["json"]
    assert mime.media_type_tokens("problem+json") == ["problem+json", "json"]
    assert mime.media_type_tokens("weird+") == ["weird+"]
