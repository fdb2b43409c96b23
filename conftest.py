import csv
import pytest
from hourglass import ProgressReporter, TimeStore

TOGGL_HEADER = [
    "User", "Email", "Client", "Project", "Task", "Description", "Billable",
    "Start date", "Start time", "End date", "End time", "Duration", "Tags", "Amount ()",
]


def toggl_row(project, description, start, end, billable="No"):
    """One export row; `start`/`end` are 'YYYY-MM-DD HH:MM:SS' strings."""
    start_date, start_time = start.split(" ")
    end_date, end_time = end.split(" ")
    return [
        "Sam", "sam@example.com", "", project, "", description, billable,
        start_date, start_time, end_date, end_time, "", "", "",
    ]


def write_export(path, rows):
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(TOGGL_HEADER)
        for row in rows:
            writer.writerow(row)
    return str(path)


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def store():
    with TimeStore() as s:
        yield s


@pytest.fixture
def sample_rows():
    """Four entries across a year boundary, one with a known typo."""
    return [
        # Tuesday, hours 09 and 10, 5400s
        toggl_row("CS 461 Capstone", "Homwork", "2022-03-01 09:00:00", "2022-03-01 10:30:00"),
        # Wednesday, hour 13, 1800s
        toggl_row("Get Hired at Dream Job", "Prepare for SACNAS", "2022-03-02 13:15:00", "2022-03-02 13:45:00"),
        # Friday 23h into Saturday 00h, 3600s
        toggl_row("Dogs", "Walk", "2021-12-31 23:30:00", "2022-01-01 00:30:00", billable="Yes"),
        # Tuesday, ends exactly on the hour: hour 14 only
        toggl_row("Misc", "Errands", "2022-03-01 14:00:00", "2022-03-01 15:00:00"),
    ]


@pytest.fixture
def export_dir(tmp_path, sample_rows):
    """Directory holding the sample rows split over two yearly exports."""
    data = tmp_path / "data"
    data.mkdir()
    write_export(data / "Toggl_time_entries_2021-01-01_to_2021-12-31.csv", sample_rows[2:3])
    write_export(
        data / "Toggl_time_entries_2022-01-01_to_2022-12-31.csv",
        sample_rows[:2] + sample_rows[3:],
    )
    return data


@pytest.fixture
def make_export(tmp_path):
    """Write rows into a CSV export under tmp_path and return its path."""
    def _make(rows, name="Toggl_time_entries_2022-01-01_to_2022-12-31.csv"):
        return write_export(tmp_path / name, rows)
    return _make


@pytest.fixture
def row():
    return toggl_row
