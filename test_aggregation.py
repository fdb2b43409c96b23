import pandas as pd
import pytest
from datetime import timezone

from hourglass import (
    DIMENSIONS, SLICE_TYPES, BucketAggregator, EntryNormalizer, ExportAssembler,
    HourExpander, TimeLogPipeline, TimeStore, TotalAggregator, build_tag_lookups,
    fold_histogram, resolve_inputs,
)


@pytest.fixture
def built(export_dir, quiet_reporter):
    """A store after ingest, expansion and aggregation of the sample exports."""
    pipeline = TimeLogPipeline(reporter=quiet_reporter)
    paths = resolve_inputs([str(export_dir)], "Toggl_time_entries_*.csv")
    with TimeStore() as store:
        pipeline.ingest(store, paths)
        pipeline.expand(store)
        pipeline.aggregate(store)
        yield pipeline, store


def totals_for(store, slice_type):
    frame = store.table("totals")
    frame = frame[frame["slice_type"] == slice_type]
    return dict(zip(frame["slice_key"], frame["total_time"]))


def hist_for(store, table, slice_type, **keys):
    frame = store.table(table)
    frame = frame[frame["hist_type"] == slice_type]
    for column, value in keys.items():
        frame = frame[frame[column] == value]
    assert len(frame) == 1
    return frame.iloc[0]["hist"]


# ============================================================================
# STORE
# ============================================================================

def test_store_starts_empty(store):
    for name in ("raw", "houred", "totals", "totals_typed", "totals_time"):
        assert store.count(name) == 0

def test_store_released_on_exit():
    with TimeStore() as s:
        s.insert("totals", [{"slice_type": "project", "slice_key": "a", "total_time": 1}])
        assert s.count("totals") == 1
    with pytest.raises(KeyError):
        s.table("totals")

def test_store_reset_on_enter():
    s = TimeStore()
    with s:
        s.insert("totals", [{"slice_type": "project", "slice_key": "a", "total_time": 1}])
    with s:
        assert s.count("totals") == 0

def test_store_insert_nothing(store):
    assert store.insert("raw", []) == 0


# ============================================================================
# FOLDING
# ============================================================================

def test_fold_histogram_nests_outermost_first():
    stats = pd.DataFrame({
        "type": ["Work", "Work", "Work"],
        "year": ["2022", "2022", "2023"],
        "hour": ["09", "10", "09"],
        "value": [1, 2, 3],
    })
    folded = fold_histogram(stats, ["type"], ["year", "hour"])
    assert len(folded) == 1
    assert folded.iloc[0]["type"] == "Work"
    assert folded.iloc[0]["value"] == {"2022": {"09": 1, "10": 2}, "2023": {"09": 3}}

def test_fold_histogram_two_keys():
    stats = pd.DataFrame({
        "project": ["A", "A", "B"],
        "description": ["x", "y", "x"],
        "hour": ["01", "02", "03"],
        "value": [5, 6, 7],
    })
    folded = fold_histogram(stats, ["project", "description"], ["hour"])
    result = {(r.project, r.description): r.value for r in folded.itertuples(index=False)}
    assert result == {("A", "x"): {"01": 5}, ("A", "y"): {"02": 6}, ("B", "x"): {"03": 7}}


# ============================================================================
# INGEST & EXPANSION
# ============================================================================

def test_ingest_and_expand_counts(built):
    pipeline, store = built
    assert store.count("raw") == 4
    assert store.count("houred") == 6
    assert pipeline.metrics.files_read == 2
    assert pipeline.metrics.entries_ingested == 4
    assert pipeline.metrics.hour_rows == 6

def test_raw_year_is_local_start_year(built):
    _, store = built
    raw = store.table("raw")
    dogs = raw[raw["project"] == "Dogs"].iloc[0]
    assert dogs["year"] == "2021"

def test_ingest_failure_aborts_file(make_export, row, quiet_reporter, store):
    path = make_export([
        row("Misc", "ok", "2022-03-01 09:00:00", "2022-03-01 10:00:00"),
        row("Misc", "backwards", "2022-03-01 10:00:00", "2022-03-01 09:00:00"),
    ])
    pipeline = TimeLogPipeline(reporter=quiet_reporter)
    with pytest.raises(ValueError):
        pipeline.ingest(store, [path])
    # nothing from the failing file is stored
    assert store.count("raw") == 0

def test_insert_failure_is_skipped(quiet_reporter, store):
    pipeline = TimeLogPipeline(reporter=quiet_reporter)
    good = EntryNormalizer().normalize({
        "project": "Misc", "description": "Errands", "billable": "No",
        "start_date": "2022-03-01", "start_time": "09:00:00",
        "end_date": "2022-03-01", "end_time": "10:00:00",
    })
    broken = good.__class__(**{**good.__dict__, "tags": ()})
    assert pipeline.insert_entries(store, [good, broken]) == 1
    assert pipeline.metrics.insert_failures == 1
    assert len(pipeline.errors) == 1


# ============================================================================
# TAG LOOKUPS & TOTALS
# ============================================================================

def test_tag_lookups(built):
    _, store = built
    grouped = store.table("tags_grouped")
    capstone = grouped[grouped["project"] == "CS 461 Capstone"].iloc[0]
    assert capstone["description"] == "Homework"
    assert tuple(capstone["types"]) == ("Compost", "School", "Work")

    project = store.table("tags_project")
    assert len(project) == 4

def test_totals_use_raw_durations(built):
    _, store = built
    assert totals_for(store, "project.description")["CS 461 Capstone|Homework"] == 5400
    assert totals_for(store, "project") == {
        "CS 461 Capstone": 5400,
        "Dogs": 3600,
        "Get Hired at Dream Job": 1800,
        "Misc": 3600,
    }

def test_multi_tag_entry_counts_towards_each_tag(built):
    _, store = built
    by_type = totals_for(store, "type")
    assert by_type["Compost"] == 5400
    assert by_type["School"] == 5400
    # "Network" also matches the Work keyword
    assert by_type["Work"] == 7200
    assert by_type["UNKNOWN"] == 3600

def test_time_totals(built):
    _, store = built
    frame = store.table("totals_time")
    year = frame[frame["time_type"] == "year"]
    assert dict(zip(year["time_value"], year["total_time"])) == {"2021": 3600, "2022": 10800}

    dates = frame[frame["time_type"] == "date"]
    assert dict(zip(dates["time_value"], dates["total_time"])) == {
        "2021-12-31": 1, "2022-01-01": 1, "2022-03-01": 3, "2022-03-02": 1,
    }

    hour_day = frame[frame["time_type"] == "hourDayMonthYear"]
    assert "2022-03_2_09" in set(hour_day["time_value"])


# ============================================================================
# HISTOGRAMS
# ============================================================================

def test_count_histogram(built):
    _, store = built
    assert hist_for(store, "totals_typed", "hourCount", type="Compost") == {"09": 1, "10": 1}
    assert hist_for(store, "totals_typed", "hourDayMonthYearCount", type="Work") == {
        "2022": {"03": {"2": {"09": 1, "10": 1}, "3": {"13": 1}}}
    }
    assert hist_for(store, "totals_typed", "hourDayMonthYearCount", type="School") == {
        "2022": {"03": {"2": {"09": 1, "10": 1}}}
    }

def test_complex_count_histogram(built):
    _, store = built
    assert hist_for(store, "totals_typed", "dayCount", type="Compost") == {
        "2": {"count": 1, "hourCount": 2}
    }

def test_complex_count_hour_count_at_least_count(built):
    _, store = built
    frame = store.table("totals_typed")
    for hist in frame[frame["hist_type"] == "dayMonthYearCount"]["hist"]:
        for months in hist.values():
            for days in months.values():
                for value in days.values():
                    assert value["hourCount"] >= value["count"]

def test_sum_histogram_uses_expanded_rows(built):
    _, store = built
    assert hist_for(store, "totals_typed", "yearSum", type="Dogs") == {
        "2021": 3600, "2022": 3600,
    }

def test_group_and_project_histograms(built):
    _, store = built
    hist = hist_for(
        store, "totals_grouped", "hourCount",
        project="CS 461 Capstone", description="Homework",
    )
    assert hist == {"09": 1, "10": 1}
    assert hist_for(store, "totals_project", "yearCount", project="Dogs") == {
        "2021": {"count": 1, "hourCount": 1},
        "2022": {"count": 1, "hourCount": 1},
    }

def test_orphaned_slice_is_dropped(store, quiet_reporter):
    entry = EntryNormalizer().normalize({
        "project": "Ghost", "description": "Errands", "billable": "No",
        "start_date": "2022-03-01", "start_time": "09:00:00",
        "end_date": "2022-03-01", "end_time": "10:00:00",
    })
    store.insert("houred", HourExpander(timezone.utc).rows([entry]))
    project_dimension = [d for d in DIMENSIONS if d.name == "project"][0]

    buckets = BucketAggregator(store, quiet_reporter)
    assert buckets.aggregate(SLICE_TYPES["hourCount"], project_dimension) == 0
    assert len(buckets.orphaned) == 1
    assert "Ghost" in buckets.orphaned[0]
    assert store.count("totals_project") == 0

def test_no_orphans_from_real_data(built):
    pipeline, _ = built
    assert pipeline.metrics.orphaned_slices == 0


# ============================================================================
# EXPORT
# ============================================================================

def test_top_by_time(built):
    _, store = built
    top = ExportAssembler(store, top_n=3).top_by_time()
    assert [t["originalTime"] for t in top["year"]] == ["2022", "2021"]
    assert top["year"][0] == {"totalTime": 10800, "timeString": "2022", "originalTime": "2022"}
    # most recent three dates, then by total
    assert [t["originalTime"] for t in top["date"]] == ["2022-03-01", "2022-03-02", "2022-01-01"]

def test_top_n_limits(built):
    _, store = built
    top = ExportAssembler(store, top_n=1).top_by_time()
    assert all(len(values) <= 1 for values in top.values())
    assert top["year"][0]["originalTime"] == "2022"

def test_assemble_document(built):
    _, store = built
    document = ExportAssembler(store).assemble()
    assert set(document) == {"byTime", "byType", "byGroup", "byProject"}

    assert list(document["byType"]["totals"]) == [
        "Community", "Compost", "Dogs", "Networking", "School", "UNKNOWN", "Work",
    ]
    compost = document["byType"]["all"]["Compost"]
    assert list(compost) == list(SLICE_TYPES)

    group = document["byGroup"]["all"]["CS 461 Capstone"]["Homework"]
    assert group["project"] == "CS 461 Capstone"
    assert group["type"] == ["Compost", "School", "Work"]
    assert group["hourCount"] == {"09": 1, "10": 1}

    project = document["byProject"]["all"]["Dogs"]
    assert project["type"] == ["Dogs"]
    assert "description" not in project

    hours = [t["originalTime"] for t in document["byTime"]["all"]["hour"]]
    assert hours == sorted(hours)
    assert document["byTime"]["all"]["hour"][0]["timeString"] == "12 midnight"

def test_totals_aggregator_on_empty_store(store):
    totals = TotalAggregator(store)
    assert totals.totals() == 0
    assert totals.time_totals() == 0
    assert build_tag_lookups(store) == (0, 0)
