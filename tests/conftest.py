import base64
from xml.sax.saxutils import quoteattr

import numpy as np
import pytest


def encode_floats(values) -> str:
    return base64.b64encode(np.asarray(values, dtype="<f4").tobytes()).decode("ascii")


def height_map_xml(
    data=None,
    label="Height",
    data_channel="height",
    position=(50.0, 60.0),
    size=(10.0, 20.0),
    resolution=None,
    units="m",
    unit_prefix="u",
    scan_angle="0 deg",
    payload=None,
    extra="",
):
    if data is None:
        data = np.arange(12, dtype=np.float32).reshape((3, 4))
    data = np.asarray(data, dtype=np.float32)
    if resolution is None:
        resolution = (data.shape[1], data.shape[0])
    if payload is None:
        payload = encode_floats(data.ravel())
    tags = ""
    if scan_angle is not None:
        tags = f'<Tag Name="ScanAngle" Value={quoteattr(scan_angle)} />'
    return f"""
    <HeightMap Label={quoteattr(label)} DataChannel={quoteattr(data_channel)}>
      <Position><X>{position[0]}</X><Y>{position[1]}</Y></Position>
      <Size><X>{size[0]}</X><Y>{size[1]}</Y></Size>
      <Resolution><X>{resolution[0]}</X><Y>{resolution[1]}</Y></Resolution>
      <Units>{units}</Units>
      <UnitPrefix>{unit_prefix}</UnitPrefix>
      <Tags>
        {tags}
        <Tag Name="IRWavenumber" Value="1500 cm-1" />
      </Tags>
      {extra}
      <SampleBase64>{payload}</SampleBase64>
    </HeightMap>"""


def spectrum_xml(
    values=None,
    label="Spot 1",
    data_points=None,
    start=1000.0,
    end=2000.0,
    location=(5.0, 7.0),
    data_channel="IR Amplitude",
    payload=None,
):
    if values is None:
        values = np.linspace(0.0, 1.0, 101, dtype=np.float32)
    if data_points is None:
        data_points = len(values)
    if payload is None:
        payload = encode_floats(values)
    return f"""
    <IRRenderedSpectra>
      <Label>{label}</Label>
      <DataPoints>{data_points}</DataPoints>
      <StartWavenumber>{start}</StartWavenumber>
      <EndWavenumber>{end}</EndWavenumber>
      <Location><X>{location[0]}</X><Y>{location[1]}</Y></Location>
      <Polarization>0</Polarization>
      <DataChannels DataChannel={quoteattr(data_channel)}>
        <SampleBase64>{payload}</SampleBase64>
      </DataChannels>
    </IRRenderedSpectra>"""


def document_xml(height_maps=(), spectra=(), doc_type="IR", version="1.0", extra=""):
    body = extra
    if height_maps:
        body += "<HeightMaps>" + "".join(height_maps) + "</HeightMaps>"
    if spectra:
        body += "<RenderedSpectra>" + "".join(spectra) + "</RenderedSpectra>"
    return (
        '<?xml version="1.0" encoding="utf-16"?>\n'
        '<Document xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
        f'DocType="{doc_type}" Version="{version}">'
        f"{body}</Document>"
    ).encode("utf-16")


@pytest.fixture
def raster():
    return np.arange(12, dtype=np.float32).reshape((3, 4))


@pytest.fixture
def axd_bytes(raster):
    return document_xml(
        height_maps=[height_map_xml(raster)],
        spectra=[spectrum_xml()],
    )


@pytest.fixture
def axd_path(tmp_path, axd_bytes):
    path = tmp_path / "sample.axd"
    path.write_bytes(axd_bytes)
    return path
