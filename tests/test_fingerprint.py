from datetime import datetime, timedelta, timezone

from regsync.services.fingerprint import candidate_hash, content_hash, normalize_date
from tests.factories import make_candidate

PUBLISHED = datetime(2026, 9, 30, 8, 15, 42, 123456, tzinfo=timezone.utc)


def _hash(**overrides):
    fields = dict(
        source="FDA", external_id="F-0042-2026", title="Peanut butter recall",
        summary="Possible Salmonella contamination", published_date=PUBLISHED,
    )
    fields.update(overrides)
    return content_hash(**fields)


def test_hash_is_stable():
    assert _hash() == _hash()
    assert len(_hash()) == 64


def test_hash_ignores_cosmetic_whitespace_and_source_case():
    assert _hash(title="  Peanut   butter\nrecall ") == _hash()
    assert _hash(external_id=" F-0042-2026 ") == _hash()
    assert _hash(source="fda") == _hash()


def test_hash_keeps_external_id_case():
    assert _hash(external_id="f-0042-2026") != _hash()


def test_hash_ignores_sub_second_and_timezone_representation():
    eastern = timezone(timedelta(hours=-4))
    assert _hash(published_date=PUBLISHED.astimezone(eastern)) == _hash()
    assert _hash(published_date=PUBLISHED.replace(microsecond=0)) == _hash()


def test_hash_changes_with_content():
    assert _hash(summary="Undeclared allergen") != _hash()
    assert _hash(title="Almond butter recall") != _hash()
    assert _hash(published_date=PUBLISHED + timedelta(days=1)) != _hash()


def test_naive_dates_are_treated_as_utc():
    assert normalize_date(datetime(2026, 1, 2, 3, 4, 5)) == "2026-01-02T03:04:05+00:00"


def test_candidate_hash_matches_field_hash():
    c = make_candidate("FDA", "F-0042-2026", title="Peanut butter recall",
                       summary="Possible Salmonella contamination", published=PUBLISHED,
                       category="food_recall")
    assert candidate_hash(c) == _hash()
