from pathlib import Path

from conductor.plan import load_plan, parse_plan

PLAN = """# Payment Retries

**Version:** 1.2
**Status:** Draft

## Overview

Some context that is not a phase.

- [ ] not a phase item

## Phase 1: Schema - COMPLETE

- [x] Add retry table

## Phase 2: Worker

**Completion gate:** retries run on a schedule

- [x] Add worker loop
- [ ] Add backoff

### Notes

- [ ] Document metrics

## Phase 2.5: Follow-ups

- [X] Clean up flags

## Appendix

- [ ] unrelated
"""


def test_parse_plan_reads_metadata_and_phases() -> None:
    plan = parse_plan(PLAN)

    assert plan.title == "Payment Retries"
    assert plan.version == "1.2"
    assert plan.status == "Draft"
    assert [phase.number for phase in plan.phases] == ["1", "2", "2.5"]
    assert plan.phases[0].title == "Schema"


def test_phase_completion_rules() -> None:
    plan = parse_plan(PLAN)
    schema, worker, follow_ups = plan.phases

    assert schema.is_complete is True
    assert worker.is_complete is False
    assert follow_ups.is_complete is True
    assert plan.current_phase is worker


def test_subsections_stay_in_phase_and_top_sections_end_it() -> None:
    plan = parse_plan(PLAN)
    worker = plan.phase("2")

    assert worker.completion_gate == "retries run on a schedule"
    assert [item.text for item in worker.items] == [
        "Add worker loop",
        "Add backoff",
        "Document metrics",
    ]
    assert [item.text for item in plan.phase("2.5").items] == ["Clean up flags"]


def test_completion_percentage_counts_checked_items() -> None:
    plan = parse_plan(PLAN)

    # 3 of 5 phase items are checked.
    assert plan.completion_percentage == 60


def test_plan_without_phases() -> None:
    plan = parse_plan("# Just notes\n\nNothing to do.\n")

    assert plan.phases == []
    assert plan.current_phase is None
    assert plan.completion_percentage == 0


def test_load_plan_reads_file(tmp_path: Path) -> None:
    path = tmp_path / "plan.md"
    path.write_text(PLAN, encoding="utf-8")

    assert len(load_plan(path).phases) == 3
