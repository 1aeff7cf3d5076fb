from tunmux.version import VERSION, get_version


def _as_tuple(text):
    return tuple(int(part) for part in text.split("."))


def test_get_version_is_compulsory_minimum():
    assert get_version() == "0.26.0"


def test_current_version_not_older_than_minimum():
    assert _as_tuple(VERSION) >= _as_tuple(get_version())


def test_versions_share_major_and_minor():
    assert _as_tuple(VERSION)[:2] == _as_tuple(get_version())[:2]