from __future__ import annotations

from datetime import date
import unittest

from src.polltrend.contracts import (
    ISSUE_TAXONOMY,
    Dataset,
    ElectionCycle,
    EvidenceStrength,
    PollRecord,
    Scope,
    ScopeEvidence,
    new_review_queue_item,
    poll_id_from_ref,
)


class ContractTest(unittest.TestCase):
    def test_poll_id_from_reference(self) -> None:
        self.assertEqual(poll_id_from_ref("https://www.pollofpolls.no/?cmd=Maling&gallupid=04512"), "4512")
        fallback = poll_id_from_ref("https://www.pollofpolls.no/?cmd=Maling&id=abc")
        self.assertTrue(fallback.startswith("poll_"))
        self.assertEqual(fallback, poll_id_from_ref(" https://www.pollofpolls.no/?cmd=Maling&id=abc "))

    def test_evidence_strength_order_and_labels(self) -> None:
        self.assertLess(EvidenceStrength.OUTLET, EvidenceStrength.FREE_TEXT)
        self.assertLess(EvidenceStrength.FREE_TEXT, EvidenceStrength.STRUCTURAL)
        self.assertEqual(EvidenceStrength.from_label("free_text"), EvidenceStrength.FREE_TEXT)
        self.assertEqual(EvidenceStrength.from_label("bogus"), EvidenceStrength.NONE)

    def test_record_serialization_drops_region_outside_regional_scope(self) -> None:
        record = PollRecord(
            id="7",
            date=date(2021, 8, 1),
            percentage=4.2,
            pollster="Norstat",
            source_ref="",
            scope=Scope.NATIONAL,
            region="Oslo",
            evidence=ScopeEvidence(pollster="Norstat"),
        )
        payload = record.to_dict()
        self.assertNotIn("region", payload)
        self.assertEqual(payload["scope_strength"], "none")
        self.assertIsNone(PollRecord.from_dict(dict(payload, region="Oslo")).region)

    def test_dataset_helpers(self) -> None:
        national = PollRecord(
            id="12", date=date(2021, 8, 1), percentage=4.0, pollster="Norstat", source_ref="", scope=Scope.NATIONAL
        )
        regional = PollRecord(
            id="30",
            date=date(2021, 8, 2),
            percentage=7.0,
            pollster="BT",
            source_ref="",
            scope=Scope.REGIONAL,
            region="Hordaland",
        )
        hashed = PollRecord(id="poll_abc", date=date(2021, 8, 3), percentage=3.0, pollster="Ukjent", source_ref="")
        cycle = ElectionCycle(year=2021, election_date=date(2021, 9, 13), polls=[national, regional, hashed])
        dataset = Dataset(elections={2021: cycle})

        self.assertEqual(dataset.highest_source_id(), 30)
        self.assertEqual(dataset.poll_ids(), {"12", "30", "poll_abc"})
        self.assertEqual([poll.id for poll in dataset.national_only().iter_polls()], ["12"])
        self.assertEqual(len(dataset.elections[2021].polls), 3)

    def test_review_queue_item_requires_known_issue_type(self) -> None:
        item = new_review_queue_item(
            entity_type="poll_ref",
            entity_id="4512",
            issue_type="parse_error",
            stage="extract",
            error_code="MISSING_DATE",
            error_message="no publication date",
        )
        self.assertIn(item.issue_type, ISSUE_TAXONOMY)
        self.assertTrue(item.id.startswith("rvq_"))
        with self.assertRaises(ValueError):
            new_review_queue_item(
                entity_type="poll_ref",
                entity_id="1",
                issue_type="mystery",
                stage="fetch",
                error_code="X",
                error_message="x",
            )


if __name__ == "__main__":
    unittest.main()
