from __future__ import annotations

from typing import List

import folium
import streamlit as st
from streamlit_folium import st_folium

from rgb_monitor.chips import Chip
from rgb_monitor.config import APP_NAME, DEFAULT_BACKEND, RENDER_TIMEOUT_SECONDS, logger
from rgb_monitor.explorer import AOI_RADIUS_METERS, Explorer, buffer_point, chip_box
from rgb_monitor.rgb_timeseries import BackendUnavailableError
from rgb_monitor.sensors import INDEX_NAMES, RGB_PRESETS, SENSORS, sensors_for_backend
from rgb_monitor.session import ExplorerSession
from rgb_monitor.sinks import ChartWidget, Label, PanelSink

CHIPS_PER_ROW = 4

# Page configuration
st.set_page_config(
    page_title=APP_NAME,
    page_icon=":satellite:",
    layout="wide",
)

st.title(APP_NAME)
st.markdown("**Click the map to chart a spectral index with points colored by the pixel's RGB composite**")

if "explorer_session" not in st.session_state:
    st.session_state.explorer_session = ExplorerSession.from_query_params(st.query_params.to_dict())
    st.session_state.chart_sink = PanelSink()
    st.session_state.explorer = Explorer(st.session_state.chart_sink)
    st.session_state.chips = []
    st.session_state.last_click = None
    st.session_state.pending_render = st.session_state.explorer_session.run

session: ExplorerSession = st.session_state.explorer_session
sink: PanelSink = st.session_state.chart_sink
explorer: Explorer = st.session_state.explorer

sensor_names = sensors_for_backend(DEFAULT_BACKEND) + [
    name for name in SENSORS if SENSORS[name].backend != DEFAULT_BACKEND
]

# Sidebar controls
with st.sidebar:
    st.header("Options")
    sensor = st.selectbox("Sensor", sensor_names, index=sensor_names.index(session.sensor))
    index = st.selectbox("Y-axis index", INDEX_NAMES, index=INDEX_NAMES.index(session.index))
    rgb_names = list(RGB_PRESETS)
    rgb = st.selectbox("RGB composite", rgb_names, index=rgb_names.index(session.rgb))
    duration = st.slider("Duration (months)", min_value=1, max_value=24, value=session.duration)
    cloud = st.slider("Max cloud cover (%)", min_value=0, max_value=100, value=session.cloud)
    chip_width = st.slider("Chip width (km)", min_value=1, max_value=10, value=session.chip_width)

    session.update_options(
        sensor=sensor, index=index, rgb=rgb, duration=duration, cloud=cloud, chip_width=chip_width
    )
    if session.needs_submit:
        st.info("Options changed since the last chart.")
        if st.button("Submit changes", type="primary", use_container_width=True):
            st.session_state.pending_render = True

    st.markdown("---")
    with st.expander("About", expanded=False):
        st.markdown(
            "Each point is the mean index value inside a "
            f"{AOI_RADIUS_METERS} m circle around the clicked location for one image date. "
            "Point colors come from the same pixels rendered with the selected RGB composite, "
            "so a green dot is a green-looking pixel. Image chips below the chart show the "
            "surrounding area for every date with the circle outlined in white."
        )
        st.caption(
            "HLS imagery is read from NASA LP DAAC; set EARTHDATA_BEARER_TOKEN in .env. "
            "Earth Engine sensors require an authenticated Earth Engine project (EE_PROJECT)."
        )

# Map
fmap = folium.Map(location=[session.lat, session.lon], zoom_start=13, control_scale=True)
folium.TileLayer(
    tiles="https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}",
    attr="Esri World Imagery",
    name="Satellite",
).add_to(fmap)
if session.clicked:
    folium.GeoJson(
        chip_box(session.lon, session.lat, session.chip_width).__geo_interface__,
        style_function=lambda _: {"color": "#ffff00", "weight": 1, "fillOpacity": 0},
    ).add_to(fmap)
    folium.GeoJson(
        buffer_point(session.lon, session.lat, AOI_RADIUS_METERS).__geo_interface__,
        style_function=lambda _: {"color": "#ffffff", "weight": 2, "fillOpacity": 0},
    ).add_to(fmap)

map_col, chart_col = st.columns([1, 1])
with map_col:
    map_data = st_folium(fmap, height=480, use_container_width=True, key="main_map",
                         returned_objects=["last_clicked"])

clicked = (map_data or {}).get("last_clicked")
if clicked and clicked != st.session_state.last_click:
    st.session_state.last_click = clicked
    try:
        session.handle_map_click(float(clicked["lng"]), float(clicked["lat"]))
        st.session_state.pending_render = True
    except ValueError as exc:
        st.error(f"Invalid map click: {exc}")


def _render_chart_panel() -> None:
    for widget in sink.widgets:
        if isinstance(widget, ChartWidget):
            chart = widget.result.chart
            if not chart.points:
                st.warning("No cloud-free observations for this point and period.")
            st.plotly_chart(widget.result.figure, use_container_width=True)
            if chart.points:
                st.download_button(
                    "Download chart data (CSV)",
                    chart.to_frame().to_csv(index=False).encode("utf-8"),
                    file_name=f"{chart.y_axis_band}_{session.lon:.5f}_{session.lat:.5f}.csv",
                    mime="text/csv",
                )
        elif isinstance(widget, Label):
            if widget.kind == "error":
                st.error(widget.text)
            else:
                st.info(widget.text)


def _render_chips(chips: List[Chip]) -> None:
    if not chips:
        return
    st.subheader("Image chips")
    for start in range(0, len(chips), CHIPS_PER_ROW):
        columns = st.columns(CHIPS_PER_ROW)
        for column, chip in zip(columns, chips[start:start + CHIPS_PER_ROW]):
            with column:
                st.image(chip.image, caption=chip.date, use_container_width=True)


with chart_col:
    if st.session_state.pending_render and session.clicked:
        st.session_state.pending_render = False
        chips: List[Chip] = []
        try:
            with st.spinner("⚙️ Processing, please wait."):
                job = explorer.render_graphics(session)
                chips, chip_notice = job.wait(timeout=RENDER_TIMEOUT_SECONDS)
            if chip_notice:
                st.warning(chip_notice)
        except BackendUnavailableError as exc:
            logger.warning("Render failed: %s", exc)
        except Exception as exc:
            logger.exception("Rendering failed")
            st.error(f"Rendering failed: {exc}")
        st.session_state.chips = chips or []
        st.query_params.from_dict(session.to_query_params())

    if session.clicked:
        _render_chart_panel()
    else:
        st.info("Click a location on the map to chart its time series.")

_render_chips(st.session_state.chips)
