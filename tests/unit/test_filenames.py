import re
import pytest
from pbt.pipeline.filenames import FALLBACK_BASE, MAX_NAME_LENGTH, generate_safe_filename, sanitize_base

UUID_RE = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"


def test_safe_filename_shape():
    name = generate_safe_filename("IMG_0001.JPG")
    assert re.fullmatch(UUID_RE + r"_IMG_0001\.JPG", name)


def test_safe_filename_is_unique():
    assert generate_safe_filename("a.jpg") != generate_safe_filename("a.jpg")


def test_unsafe_characters_replaced():
    name = generate_safe_filename('my:photo <1>|"best"?.jpg', id_factory=lambda: "id")
    assert name == "id_my_photo_1_best.jpg"


def test_directory_components_dropped():
    name = generate_safe_filename("../../etc/passwd.jpg", id_factory=lambda: "id")
    assert name == "id_passwd.jpg"


@pytest.mark.parametrize("original", ["???.jpg", "   .png", "___.jpg", "<>.jpg"])
def test_empty_base_falls_back(original):
    name = generate_safe_filename(original, id_factory=lambda: "id")
    assert name.startswith(f"id_{FALLBACK_BASE}")
    assert name[len("id_"):] != ""


def test_long_name_truncated_to_budget():
    original = "x" * 400 + ".jpeg"
    name = generate_safe_filename(original)
    assert len(name) == MAX_NAME_LENGTH
    assert name.endswith(".jpeg")


@pytest.mark.parametrize("length", [1, 50, 219, 220, 300, 1000])
def test_never_exceeds_budget(length):
    name = generate_safe_filename("a" * length + ".tif")
    assert len(name) <= MAX_NAME_LENGTH
    assert name.endswith(".tif")


def test_custom_budget():
    name = generate_safe_filename("abcdefghij.jpg", max_length=12, id_factory=lambda: "id")
    assert name == "id_abcde.jpg"
    assert len(name) <= 12


def test_budget_too_small_raises():
    with pytest.raises(ValueError):
        generate_safe_filename("photo.jpg", max_length=10, id_factory=lambda: "0123456789")


def test_pathological_extension_folded_into_base():
    name = generate_safe_filename("archive.this-is-not-really-an-extension", id_factory=lambda: "id")
    assert name == "id_archive.this-is-not-really-an-extension"


def test_sanitize_base_collapses_runs():
    assert sanitize_base("a  b\t\tc") == "a_b_c"
    assert sanitize_base("__a__") == "a"


def test_reserve_leaves_room_for_derived_suffix():
    name = generate_safe_filename("p" * 300 + ".jpg", reserve=len("_processed.jpg"))
    stem = name[: -len(".jpg")]
    assert len(stem + "_processed.jpg") == MAX_NAME_LENGTH
    assert name.endswith(".jpg")


def test_reserve_shorter_than_extension_has_no_effect():
    name = generate_safe_filename("abcdefghij.jpeg", max_length=14, reserve=2, id_factory=lambda: "id")
    assert name == "id_abcdef.jpeg"
