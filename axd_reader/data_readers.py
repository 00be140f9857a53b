"""Analysis Studio XML Data Readers

This module reads Anasys Instruments / Analysis Studio XML (.axd) files.
An AXDFile has a dict of calibrated RasterImages decoded from the HeightMaps
section and a dict of SpectraCollections decoded from the RenderedSpectra
section. Unlike the binary formats, the whole document is parsed eagerly:
everything is base64 text inside a UTF-16 XML tree, so there is nothing to
gain from reading lazily.

Damaged height maps or spectra are skipped with a SkippedItemWarning, while
a document that is not an IR 1.0 Analysis Studio file, or that yields
nothing at all, raises.
"""

# Copyright (C) Richard J. Sheridan
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
import math
import os
import pathlib
import re
import warnings
import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterator
from itertools import count
from typing import TypeAlias

import numpy as np
from attrs import field, frozen, mutable

from axd_reader.codec import decode_samples
from axd_reader.errors import (
    EmptyResult,
    MalformedDocument,
    PayloadError,
    SkippedItemWarning,
    UnsupportedFileType,
)
from axd_reader.geometry import (
    flip_horizontal,
    flip_vertical,
    normalize_angle,
    rotate_90,
    rotate_expanded,
)

EXTENSION = ".axd"
IMPORTER = "Analysis_Studio"
DOC_TYPE = "IR"
DOC_VERSION = "1.0"

# Longest prolog seen so far puts the root tag ~2 kB in, stop well after that
MAGIC_WINDOW = 4096
MAGIC_MARKERS = (
    "<Document".encode("utf-16-le"),
    "<Document".encode("utf-16-be"),
)
NAME_ONLY_SCORE = 20
CONTENT_SCORE = 50

MICROMETER_UNIT_CONVERSION = 1e-6
OBLIQUE_INDEX_OFFSET = 1_000_000
UNIT_PREFIX_MULTIPLIERS = {
    "f": 1e-15,
    "p": 1e-12,
    "n": 1e-9,
    "u": 1e-6,
    "m": 1e-3,
}
WAVENUMBER_LABEL = "Wavenumber (cm⁻¹)"
ALL_SPECTRA_TITLE = "All Spectra"

# Element names with dedicated readers. Anything else is flattened into metadata.
HEIGHT_MAPS = "HeightMaps"
RENDERED_SPECTRA = "RenderedSpectra"
IR_RENDERED_SPECTRA = "IRRenderedSpectra"
SAMPLE_BASE_64 = "SampleBase64"
STRUCTURAL_ELEMENTS = frozenset(
    {"Position", "Size", "Resolution", "Units", "UnitPrefix", "Tags", SAMPLE_BASE_64}
)

###############################################
############### Typing stuff ##################
###############################################


Index: TypeAlias = tuple[int, ...]
Metadata: TypeAlias = dict[str, str]
Pair: TypeAlias = tuple[float, float]


###############################################
################## Helpers ####################
###############################################


def mmap_path_read_only(path):
    import mmap

    with open(path, mode="rb", buffering=0) as file:
        return mmap.mmap(file.fileno(), length=0, access=mmap.ACCESS_READ)


def local_name(tag: str) -> str:
    """Strip an ElementTree namespace prefix like {uri}Name."""
    return tag.rpartition("}")[2]


def child_elements(element: ET.Element) -> list[ET.Element]:
    # comments and processing instructions have non-str tags
    return [child for child in element if isinstance(child.tag, str)]


def node_text(element: ET.Element) -> str:
    """Concatenate the text nodes directly inside element, like libxml2 would."""
    return (element.text or "") + "".join(child.tail or "" for child in element)


_LEADING_FLOAT = re.compile(r"\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_LEADING_INT = re.compile(r"\s*[+-]?\d+")


def parse_float(text: str | None) -> float:
    """Parse the leading number of text like C atof, 0.0 if there is none."""
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        pass
    match_ = _LEADING_FLOAT.match(text)
    return float(match_.group()) if match_ else 0.0


def parse_int(text: str | None) -> int:
    """Parse the leading integer of text like C atoi, 0 if there is none."""
    if not text:
        return 0
    match_ = _LEADING_INT.match(text)
    return int(match_.group()) if match_ else 0


def parse_scan_angle(value: str | None) -> float:
    """Read a tag value like "45 deg" into degrees within (-180, 180]."""
    number, sep, _ = (value or "").partition(" ")
    if not sep:
        return 0.0
    angle = parse_float(number)
    if not math.isfinite(angle):
        return 0.0
    return normalize_angle(angle)


def _read_pair(
    element: ET.Element, metadata: Metadata, prefix: str, parse: Callable
) -> tuple:
    x = y = parse(None)
    for child in child_elements(element):
        name = local_name(child.tag)
        text = node_text(child)
        if name == "X":
            x = parse(text)
        elif name == "Y":
            y = parse(text)
        metadata[f"{prefix}_{name}"] = text
    return x, y


def _skip(kind: str, index: int, title: str, reason: str):
    warnings.warn(
        f"Skipping {kind} {index} ({title}): {reason}",
        SkippedItemWarning,
        stacklevel=3,
    )


###############################################
########## Detection and validation ###########
###############################################


def detect(filename, head: bytes | None = None) -> int:
    """Score how likely filename is an Analysis Studio XML file.

    With no head, only the name is checked. Otherwise the first bytes of the
    file must contain the UTF-16 encoded root tag. Never raises."""
    try:
        name = os.fsdecode(filename)
    except TypeError:
        return 0
    if not name.lower().endswith(EXTENSION):
        return 0
    if head is None:
        return NAME_ONLY_SCORE
    try:
        window = bytes(head[:MAGIC_WINDOW])
    except (TypeError, ValueError):
        return 0
    if any(marker in window for marker in MAGIC_MARKERS):
        return CONTENT_SCORE
    return 0


def parse_document(data) -> ET.Element:
    """Parse the bytes of a whole file. Encoding comes from the BOM/prolog."""
    try:
        return ET.fromstring(bytes(data))
    except (ET.ParseError, ValueError) as e:
        # pyexpat raises a bare ValueError for multi-byte encodings it cannot decode
        raise MalformedDocument(f"Not an XML document: {e}") from e


def validate_document(root: ET.Element | None):
    if root is None:
        raise MalformedDocument("Document has no root element.")
    if local_name(root.tag) != "Document":
        raise UnsupportedFileType("Not an Analysis Studio document.", root.tag)
    doc_type = root.get("DocType")
    version = root.get("Version")
    if doc_type != DOC_TYPE or version != DOC_VERSION:
        raise UnsupportedFileType(
            f"Unsupported Analysis Studio document DocType={doc_type!r} "
            f"Version={version!r}, expected DocType={DOC_TYPE!r} "
            f"Version={DOC_VERSION!r}."
        )


###############################################
################# Metadata ####################
###############################################


def flatten_element(element: ET.Element, metadata: Metadata):
    """Store element in metadata under its tag, or its children under tag_child.

    Only one level is looked into. Text of deeper descendants is dropped, the
    format never nests further."""
    tag = local_name(element.tag)
    children = child_elements(element)
    if not children:
        metadata[tag] = node_text(element)
        return
    for child in children:
        metadata[f"{tag}_{local_name(child.tag)}"] = node_text(child)


def flatten_metadata(
    element: ET.Element, skip: frozenset[str] = STRUCTURAL_ELEMENTS
) -> Metadata:
    metadata = {}
    for child in child_elements(element):
        if local_name(child.tag) not in skip:
            flatten_element(child, metadata)
    return metadata


###############################################
################## Outputs ####################
###############################################


@frozen
class RasterImage:
    title: str
    data: np.ndarray = field(repr=False)
    xreal: float
    yreal: float
    xoffset: float
    yoffset: float
    z_unit: str
    metadata: Metadata = field(factory=dict, repr=lambda x: f"<dict with {len(x)} entries>")
    mask: np.ndarray | None = field(default=None, repr=False)
    xy_unit: str = "m"

    @property
    def shape(self) -> Index:
        return self.data.shape


@frozen
class Spectrum:
    title: str
    y_label: str | None
    data: np.ndarray = field(repr=False)
    xreal: float
    xoffset: float
    location: Pair
    metadata: Metadata = field(factory=dict, repr=lambda x: f"<dict with {len(x)} entries>")
    x_label: str = WAVENUMBER_LABEL

    @property
    def step(self) -> float:
        return self.xreal / len(self.data)

    @property
    def wavenumbers(self) -> np.ndarray:
        return self.xoffset + self.step * np.arange(len(self.data))


@frozen
class SpectraCollection:
    title: str
    spectra: list[Spectrum] = field(factory=list)
    x_label: str = WAVENUMBER_LABEL
    xy_unit: str = "m"

    def __len__(self):
        return len(self.spectra)

    def __iter__(self) -> Iterator[Spectrum]:
        return iter(self.spectra)


###############################################
################ Height maps ##################
###############################################


@mutable
class ChannelDescriptor:
    index: int
    label: str
    data_channel: str | None = None
    position: Pair = (0.0, 0.0)
    size: Pair = (0.0, 0.0)
    resolution: tuple[int, int] = (0, 0)
    units: str = "m"
    unit_multiplier: float = 1.0
    scan_angle: float = 0.0
    metadata: Metadata = field(factory=dict, repr=lambda x: f"<dict with {len(x)} entries>")
    payload: str | None = field(default=None, repr=False)

    @classmethod
    def parse(cls, element: ET.Element, index: int) -> "ChannelDescriptor":
        data_channel = element.get("DataChannel")
        label = element.get("Label") or data_channel or f"Channel {index}"
        channel = cls(index, label, data_channel)
        if data_channel is not None:
            channel.metadata["DataChannel"] = data_channel
        for child in child_elements(element):
            handler = _CHANNEL_HANDLERS.get(local_name(child.tag))
            if handler is None:
                flatten_element(child, channel.metadata)
            else:
                handler(channel, child)
        return channel

    @property
    def npixels(self) -> int:
        xres, yres = self.resolution
        return xres * yres if xres > 0 and yres > 0 else 0

    def get_data(self) -> np.ndarray:
        """Decode the payload into a (yres, xres) array in z units, as stored."""
        xres, yres = self.resolution
        data = decode_samples(self.payload, self.npixels).reshape((yres, xres))
        data *= self.unit_multiplier
        return data


def _channel_position(channel: ChannelDescriptor, element: ET.Element):
    channel.position = _read_pair(element, channel.metadata, "Position", parse_float)


def _channel_size(channel: ChannelDescriptor, element: ET.Element):
    channel.size = _read_pair(element, channel.metadata, "Size", parse_float)


def _channel_resolution(channel: ChannelDescriptor, element: ET.Element):
    channel.resolution = _read_pair(element, channel.metadata, "Resolution", parse_int)


def _channel_units(channel: ChannelDescriptor, element: ET.Element):
    channel.units = node_text(element)
    channel.metadata["Units"] = channel.units


def _channel_unit_prefix(channel: ChannelDescriptor, element: ET.Element):
    prefix = node_text(element)
    channel.unit_multiplier = UNIT_PREFIX_MULTIPLIERS.get(prefix, 1.0)
    channel.metadata["UnitPrefix"] = prefix


def _channel_tags(channel: ChannelDescriptor, element: ET.Element):
    for tag in child_elements(element):
        name = tag.get("Name")
        if name is None:
            continue
        value = tag.get("Value", "")
        if name == "ScanAngle":
            channel.scan_angle = parse_scan_angle(value)
        channel.metadata[name] = value


def _channel_payload(channel: ChannelDescriptor, element: ET.Element):
    channel.payload = node_text(element)


_CHANNEL_HANDLERS = {
    "Position": _channel_position,
    "Size": _channel_size,
    "Resolution": _channel_resolution,
    "Units": _channel_units,
    "UnitPrefix": _channel_unit_prefix,
    "Tags": _channel_tags,
    SAMPLE_BASE_64: _channel_payload,
}
assert _CHANNEL_HANDLERS.keys() == STRUCTURAL_ELEMENTS


def orient_channel(channel: ChannelDescriptor, data: np.ndarray) -> list[RasterImage]:
    """Turn stored data into calibrated images, one or two depending on the angle.

    Axis-aligned scans give one image. Oblique scans give the unrotated
    "Offset" image followed by the "Rotated" image on an expanded canvas."""
    angle = channel.scan_angle
    range_x, range_y = channel.size
    pos_x, pos_y = channel.position
    um = MICROMETER_UNIT_CONVERSION

    if angle == 0.0:
        data = flip_vertical(data)
        width, height = range_x, range_y
    elif angle == 180.0:
        data = flip_horizontal(data)
        width, height = range_x, range_y
    elif angle == 90.0:
        data = flip_vertical(rotate_90(data, clockwise=False))
        width, height = range_y, range_x
    elif angle == -90.0:
        data = flip_vertical(rotate_90(data, clockwise=True))
        width, height = range_y, range_x
    else:
        yres, xres = data.shape
        offset_image = RasterImage(
            title=f"{channel.label} (Offset)",
            data=np.ascontiguousarray(flip_vertical(data)),
            xreal=range_x * um,
            yreal=range_y * um,
            xoffset=1.0,
            yoffset=1.0,
            z_unit=channel.units,
            metadata=channel.metadata,
        )
        rotated, exterior, xreal, yreal = rotate_expanded(
            data, angle, range_x * um / xres, range_y * um / yres
        )
        rotated_image = RasterImage(
            title=f"{channel.label} (Rotated)",
            data=np.ascontiguousarray(flip_vertical(rotated)),
            xreal=xreal,
            yreal=yreal,
            xoffset=pos_x * um - 0.5 * xreal,
            yoffset=pos_y * um - 0.5 * yreal,
            z_unit=channel.units,
            metadata=channel.metadata,
            mask=np.ascontiguousarray(flip_vertical(exterior)),
        )
        return [offset_image, rotated_image]

    return [
        RasterImage(
            title=channel.label,
            data=np.ascontiguousarray(data),
            xreal=width * um,
            yreal=height * um,
            xoffset=(pos_x - 0.5 * width) * um,
            yoffset=(pos_y - 0.5 * height) * um,
            z_unit=channel.units,
            metadata=channel.metadata,
        )
    ]


def read_height_maps(
    element: ET.Element, counter: Iterator[int] | None = None
) -> dict[int, RasterImage]:
    """Decode every channel of a HeightMaps element.

    Channels are numbered from counter (1, 2, ... by default) in document
    order whether or not they decode. The rotated image of an oblique channel
    is stored at OBLIQUE_INDEX_OFFSET + its number."""
    if counter is None:
        counter = count(1)
    images = {}
    for child in child_elements(element):
        index = next(counter)
        channel = ChannelDescriptor.parse(child, index)
        if not channel.npixels:
            _skip("height map", index, channel.label, "no pixels.")
            continue
        try:
            data = channel.get_data()
        except PayloadError as e:
            _skip("height map", index, channel.label, e.args[0])
            continue
        primary, *rotated = orient_channel(channel, data)
        images[index] = primary
        for image in rotated:
            images[OBLIQUE_INDEX_OFFSET + index] = image
    return images


###############################################
################## Spectra ####################
###############################################


@mutable
class SpectrumDescriptor:
    index: int
    title: str
    npoints: int = 0
    start: float = 0.0
    end: float = 0.0
    location: Pair = (0.0, 0.0)
    y_label: str | None = None
    metadata: Metadata = field(factory=dict, repr=lambda x: f"<dict with {len(x)} entries>")
    payload: str | None = field(default=None, repr=False)

    @classmethod
    def parse(cls, element: ET.Element, index: int) -> "SpectrumDescriptor":
        spectrum = cls(index, f"Spectrum {index}")
        for child in child_elements(element):
            handler = _SPECTRUM_HANDLERS.get(local_name(child.tag))
            if handler is None:
                flatten_element(child, spectrum.metadata)
            else:
                handler(spectrum, child)
        return spectrum

    @property
    def xreal(self) -> float:
        # DataPoints samples span end - start edge to edge,
        # stretch by a bin so that the step is (end - start) / (n - 1)
        span = self.end - self.start
        if self.npoints > 1:
            span *= 1.0 + 1.0 / (self.npoints - 1)
        return span

    def get_spectrum(self) -> Spectrum:
        um = MICROMETER_UNIT_CONVERSION
        x, y = self.location
        return Spectrum(
            title=self.title,
            y_label=self.y_label,
            data=decode_samples(self.payload, self.npoints),
            xreal=self.xreal,
            xoffset=self.start,
            location=(x * um, y * um),
            metadata=self.metadata,
        )


def _spectrum_label(spectrum: SpectrumDescriptor, element: ET.Element):
    spectrum.title = node_text(element)


def _spectrum_data_points(spectrum: SpectrumDescriptor, element: ET.Element):
    spectrum.npoints = parse_int(node_text(element))


def _spectrum_start(spectrum: SpectrumDescriptor, element: ET.Element):
    spectrum.start = parse_float(node_text(element))


def _spectrum_end(spectrum: SpectrumDescriptor, element: ET.Element):
    spectrum.end = parse_float(node_text(element))


def _spectrum_location(spectrum: SpectrumDescriptor, element: ET.Element):
    spectrum.location = _read_pair(element, spectrum.metadata, "Location", parse_float)


def _spectrum_data_channels(spectrum: SpectrumDescriptor, element: ET.Element):
    spectrum.y_label = element.get("DataChannel")
    for child in child_elements(element):
        if local_name(child.tag) == SAMPLE_BASE_64:
            spectrum.payload = node_text(child)
            break


_SPECTRUM_HANDLERS = {
    "Label": _spectrum_label,
    "DataPoints": _spectrum_data_points,
    "StartWavenumber": _spectrum_start,
    "EndWavenumber": _spectrum_end,
    "Location": _spectrum_location,
    "DataChannels": _spectrum_data_channels,
}


def read_spectra(
    element: ET.Element,
    counter: Iterator[int] | None = None,
    aggregate: SpectraCollection | None = None,
) -> dict[int, SpectraCollection]:
    """Decode every IRRenderedSpectra child of a RenderedSpectra element.

    Each spectrum gets its own collection, numbered from counter, and is
    also appended to aggregate, which is stored at index 0."""
    if counter is None:
        counter = count(1)
    if aggregate is None:
        aggregate = SpectraCollection(ALL_SPECTRA_TITLE)
    collections = {}
    for child in child_elements(element):
        if local_name(child.tag) != IR_RENDERED_SPECTRA:
            continue
        index = next(counter)
        descriptor = SpectrumDescriptor.parse(child, index)
        if descriptor.npoints < 1:
            _skip("spectrum", index, descriptor.title, "no data points.")
            continue
        try:
            spectrum = descriptor.get_spectrum()
        except PayloadError as e:
            _skip("spectrum", index, descriptor.title, e.args[0])
            continue
        collections[index] = SpectraCollection(spectrum.title, [spectrum])
        aggregate.spectra.append(spectrum)
    collections[0] = aggregate
    return collections


###############################################
################### Files #####################
###############################################


@frozen
class AXDFile:
    images: dict[int, RasterImage]
    spectra: dict[int, SpectraCollection]
    filename: str | None = None
    importer: str = IMPORTER

    @property
    def metadata(self) -> dict[int, Metadata]:
        return {index: image.metadata for index, image in self.images.items()}

    @property
    def all_spectra(self) -> SpectraCollection | None:
        return self.spectra.get(0)

    @classmethod
    def parse(cls, data, filename: str | None = None) -> "AXDFile":
        root = parse_document(data)
        validate_document(root)

        images = {}
        spectra = {}
        image_counter = count(1)
        spectrum_counter = count(1)
        aggregate = SpectraCollection(ALL_SPECTRA_TITLE)
        handlers = {
            HEIGHT_MAPS: lambda e: images.update(read_height_maps(e, image_counter)),
            RENDERED_SPECTRA: lambda e: spectra.update(
                read_spectra(e, spectrum_counter, aggregate)
            ),
        }
        for child in child_elements(root):
            handler = handlers.get(local_name(child.tag))
            if handler is not None:
                handler(child)

        if not images and not aggregate.spectra:
            raise EmptyResult("No height maps or spectra could be decoded.", filename)
        return cls(images, spectra, filename)


def load_axd(path) -> AXDFile:
    """Read and decode a whole .axd file."""
    path = pathlib.Path(path)
    if not path.stat().st_size:
        raise MalformedDocument("File is empty.", str(path))
    with mmap_path_read_only(path) as data:
        return AXDFile.parse(data, filename=str(path))
