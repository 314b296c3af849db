from __future__ import annotations

from datetime import date
import json

import pytest

import app.services.repository as repository_module
from app.services.errors import DatasetStoreError
from app.services.repository import JsonDatasetRepository
from src.polltrend.contracts import Dataset, ElectionCycle, Scope


@pytest.fixture
def repo(tmp_path) -> JsonDatasetRepository:
    return JsonDatasetRepository(
        dataset_path=tmp_path / "polling-data.json",
        cursor_path=tmp_path / "scan-cursor.json",
        national_export_path=tmp_path / "polling-data-national.json",
    )


@pytest.fixture
def dataset(record_factory) -> Dataset:
    national = record_factory("4500", date(2021, 8, 19), percentage=4.1)
    regional = record_factory(
        "4501", date(2021, 8, 20), percentage=5.8, scope=Scope.REGIONAL, region="Oslo", rule=2
    )
    national.days_until_election = 25
    regional.days_until_election = 24
    only_regional = record_factory("3000", date(2017, 6, 1), scope=Scope.REGIONAL, region="Bergen", rule=2)
    return Dataset(
        elections={
            2021: ElectionCycle(year=2021, election_date=date(2021, 9, 13), actual_result=3.9, polls=[national, regional]),
            2017: ElectionCycle(year=2017, election_date=date(2017, 9, 11), actual_result=3.2, polls=[only_regional]),
        }
    )


def test_missing_files_mean_empty_dataset_and_no_cursor(repo):
    assert repo.load_dataset().elections == {}
    assert repo.load_cursor() is None


def test_save_and_load_preserves_records(repo, dataset):
    repo.save_dataset(dataset)

    loaded = repo.load_dataset()

    assert loaded.to_dict() == dataset.to_dict()
    raw = json.loads(repo.dataset_path.read_text(encoding="utf-8"))
    assert list(raw["elections"]) == ["2017", "2021"]
    oslo = raw["elections"]["2021"]["polls"][1]
    assert oslo["region"] == "Oslo"
    assert oslo["scope_strength"] == "structural"
    assert "region" not in raw["elections"]["2021"]["polls"][0]


def test_failed_save_keeps_previous_file(repo, dataset, monkeypatch: pytest.MonkeyPatch, record_factory):
    repo.save_dataset(dataset)
    before = repo.dataset_path.read_text(encoding="utf-8")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(repository_module.os, "replace", broken_replace)
    dataset.elections[2021].polls.append(record_factory("4600", date(2021, 9, 1)))

    with pytest.raises(DatasetStoreError):
        repo.save_dataset(dataset)

    assert repo.dataset_path.read_text(encoding="utf-8") == before
    assert [path.name for path in repo.dataset_path.parent.iterdir() if path.suffix == ".tmp"] == []


def test_corrupt_json_raises_store_error(repo):
    repo.dataset_path.write_text("{not json", encoding="utf-8")
    with pytest.raises(DatasetStoreError):
        repo.load_dataset()


def test_region_without_regional_scope_is_rejected(repo):
    payload = {
        "elections": {
            "2021": {
                "election_date": "2021-09-13",
                "polls": [
                    {
                        "id": "1",
                        "date": "2021-08-20",
                        "percentage": 4.0,
                        "pollster": "Norstat",
                        "scope": "national",
                        "region": "Oslo",
                    }
                ],
            }
        }
    }
    repo.dataset_path.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(DatasetStoreError):
        repo.load_dataset()


def test_duplicate_ids_across_cycles_are_rejected(repo):
    poll = {"id": "7", "date": "2017-06-01", "percentage": 3.0, "pollster": "Norstat", "scope": "national"}
    payload = {
        "elections": {
            "2017": {"election_date": "2017-09-11", "polls": [poll]},
            "2021": {"election_date": "2021-09-13", "polls": [dict(poll, date="2021-06-01")]},
        }
    }
    repo.dataset_path.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(DatasetStoreError):
        repo.load_dataset()


def test_cursor_round_trip(repo):
    repo.save_cursor(4512)
    assert repo.load_cursor() == 4512
    assert "updated_at" in json.loads(repo.cursor_path.read_text(encoding="utf-8"))


def test_national_export_omits_regional_polls_and_empty_cycles(repo, dataset):
    path = repo.write_national_export(dataset)

    exported = json.loads(path.read_text(encoding="utf-8"))

    assert list(exported["elections"]) == ["2021"]
    assert [poll["id"] for poll in exported["elections"]["2021"]["polls"]] == ["4500"]
    assert len(dataset.elections[2021].polls) == 2
