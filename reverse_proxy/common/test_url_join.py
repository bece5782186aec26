import pytest

from reverse_proxy.common.url_join import url_join


class TestUrlJoin:
    """Test joining a target path prefix with an incoming request path."""

    def test_relative_segments(self):
        assert url_join("some-path", "am") == "some-path/am"

    def test_absolute_segments(self):
        assert url_join("/forward", "/static/path") == "/forward/static/path"

    def test_all_empty(self):
        assert url_join("", "") == ""

    def test_no_segments(self):
        assert url_join() == ""

    def test_empty_prefix_is_dropped(self):
        """An empty prefix must not introduce a leading slash."""
        assert url_join("", "am") == "am"
        assert url_join("", "/am") == "/am"

    def test_collapses_repeated_slashes(self):
        assert url_join("/forward/", "/static//path") == "/forward/static/path"

    def test_query_string_left_untouched(self):
        result = url_join(
            "/forward", "/?foo=bar//&target=http://foobar.com/?a=1%26b=2&other=2"
        )
        assert result == "/forward/?foo=bar//&target=http://foobar.com/?a=1%26b=2&other=2"

    def test_trailing_question_mark_kept(self):
        assert url_join("/forward", "/path?") == "/forward/path?"

    @pytest.mark.parametrize(
        "absolute_url",
        [
            "https://google.com",
            "https://google.com:/join/join.js",
            "http://google.com:/join/join.js",
        ],
    )
    def test_scheme_separator_preserved(self, absolute_url):
        """A full URL used as a path (forward proxy style) keeps its ``//``."""
        assert url_join("/", absolute_url) == f"/{absolute_url}"

    def test_inputs_not_mutated(self):
        segments = ["/forward", "/a?b=c"]
        url_join(*segments)
        assert segments == ["/forward", "/a?b=c"]

    @pytest.mark.parametrize(
        "prefix,suffix",
        [("/api", "users"), ("/api/", "/users/1"), ("a", "b/c"), ("/x//y", "//z")],
    )
    def test_no_doubled_slashes_and_parts_recoverable(self, prefix, suffix):
        result = url_join(prefix, suffix)
        assert "//" not in result
        assert result.endswith(suffix.strip("/").replace("//", "/"))
        assert result.startswith(prefix.rstrip("/").replace("//", "/"))
