from datetime import date

from rgb_monitor.session import DEFAULT_LAT, DEFAULT_LON, ExplorerSession


def test_defaults():
    session = ExplorerSession()
    assert (session.lon, session.lat) == (DEFAULT_LON, DEFAULT_LAT)
    assert session.duration == 12
    assert not session.clicked


def test_query_params_parse_clamp_and_fall_back():
    session = ExplorerSession.from_query_params(
        {
            "run": "true",
            "lon": "10.5",
            "lat": "95",
            "duration": "40",
            "cloud": "-5",
            "chipwidth": "3",
            "sensor": "Nope",
            "index": "NDVI",
        }
    )
    assert session.run and session.clicked
    assert session.lon == 10.5
    assert session.lat == DEFAULT_LAT
    assert session.duration == 24
    assert session.cloud == 0
    assert session.chip_width == 3
    assert session.sensor == "HLS (both)"
    assert session.index == "NDVI"


def test_query_params_round_trip_for_shareable_url():
    session = ExplorerSession(run=True, lon=-120.123456, lat=35.5, rgb="NIR/RED/GREEN", chip_width=5)
    params = session.to_query_params()
    assert params["lon"] == "-120.12346"
    assert params["run"] == "true"
    assert params["chipwidth"] == "5"
    restored = ExplorerSession.from_query_params(params)
    assert restored.rgb == "NIR/RED/GREEN"
    assert restored.chip_width == 5


def test_option_change_after_click_needs_submit():
    session = ExplorerSession()
    assert session.update_options(cloud=50)
    assert not session.needs_submit

    session.handle_map_click(2.0, 48.0)
    assert session.clicked and session.run
    assert not session.update_options(cloud=50)
    assert session.update_options(index="NDVI", duration=6)
    assert session.needs_submit
    session.submit()
    assert not session.needs_submit


def test_date_range_counts_months_back():
    assert ExplorerSession(duration=12).date_range(date(2024, 3, 31)) == (date(2023, 3, 31), date(2024, 3, 31))
    assert ExplorerSession(duration=1).date_range(date(2024, 3, 31)) == (date(2024, 2, 29), date(2024, 3, 31))


def test_non_finite_numbers_fall_back_to_defaults():
    session = ExplorerSession.from_query_params(
        {"run": "true", "duration": "inf", "cloud": "1e400", "chipwidth": "nan", "lon": "-inf"}
    )
    assert session.run
    assert session.duration == 12
    assert session.cloud == 30
    assert session.chip_width == 2
    assert session.lon == DEFAULT_LON
