import pytest

from cz_subtitles.tags import (
    AUDIO_TAGS,
    CODEC_TAGS,
    EDITION_TAGS,
    RESOLUTION_TAGS,
    SOURCE_TAGS,
    extract_tags,
    extract_tags_from,
    normalize,
    tag_family,
)

ALL_TAGS = sorted(RESOLUTION_TAGS | SOURCE_TAGS | CODEC_TAGS | AUDIO_TAGS | EDITION_TAGS)


def test_normalize_collapses_separators():
    assert normalize("The.Matrix_1999-1080p  BluRay") == "the matrix 1999 1080p bluray"


def test_typical_release_name():
    tags = extract_tags("The.Matrix.1999.1080p.BluRay.x264-GROUP")
    assert tags == {"1080p", "bluray", "x264"}


def test_aliases_map_to_canonical_tags():
    tags = extract_tags("Dune.Part.Two.2024.2160p.WEB-DL.Atmos.H.265.Extended")
    assert tags == {"2160p", "web-dl", "atmos", "x265", "extended"}
    assert extract_tags("Movie 4K UHD BDRip") == {"2160p", "bluray"}
    assert extract_tags("Movie.Directors.Cut.DVDRip.XviD") == {"directors-cut", "dvdrip", "xvid"}


def test_matches_respect_token_boundaries():
    assert extract_tags("Northern Lights") == frozenset()
    assert extract_tags("Scam Artists") == frozenset()
    assert extract_tags("Movie.2019.TS.XviD") == {"ts", "xvid"}


@pytest.mark.parametrize("tag", ALL_TAGS)
def test_canonical_tag_maps_to_itself(tag):
    assert extract_tags(tag) == {tag}


@pytest.mark.parametrize(
    "name",
    [
        "The.Matrix.1999.1080p.BluRay.x264-GROUP",
        "Show.S01E02.720p.HDTV.x264",
        "Film.2021.REMASTERED.UNRATED.2160p.UHD.BluRay.REMUX.HEVC.TrueHD.Atmos",
        "",
    ],
)
def test_extraction_is_idempotent(name):
    tags = extract_tags(name)
    assert extract_tags(" ".join(sorted(tags))) == tags


def test_union_over_texts_and_families():
    assert extract_tags_from(["Movie 1080p", None, "WEBRip AAC"]) == {"1080p", "webrip", "aac"}
    assert tag_family("1080p") == "resolution"
    assert tag_family("web-dl") == "source"
    assert tag_family("unknown") is None
