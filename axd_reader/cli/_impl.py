import json
import pathlib
import re
import sys
import warnings
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from itertools import islice

import click
import cloup
import imageio
import numpy as np
from tqdm import tqdm

from axd_reader.data_readers import AXDFile, detect, load_axd
from axd_reader.errors import SkippedItemWarning
from axd_reader._util import MAX_WORKERS


def _imwrite_f4(fname, array):
    imageio.imwrite(fname, np.asarray(array, dtype=np.float32))


# must take two positional arguments, fname and array
EXPORTER_MAP = {
    "txt": partial(np.savetxt, fmt="%.8g"),
    "asc": partial(np.savetxt, fmt="%.8g"),
    "tsv": partial(np.savetxt, fmt="%.8g", delimiter="\t"),
    "csv": partial(np.savetxt, fmt="%.8g", delimiter=","),
    "tif": _imwrite_f4,
    "npy": np.save,
    "npz": np.savez_compressed,
}


def echo(message=None, file=None, nl=True, err=False, color=None):
    with tqdm.external_write_mode(file=sys.stderr if err else sys.stdout):
        click.echo(message, file, nl, err, color)


def show_skipped(message, category, filename, lineno, file=None, line=None):
    echo(f"{category.__name__}: {message}", err=True)


def at_least(lo):

    def at_least_inner(c, p, v):
        return max(v, lo)

    return at_least_inner


def suffix(c, p, filenames):
    unknown = [filename.name for filename in filenames if not detect(filename)]
    if unknown:
        raise click.BadParameter(f"Unknown filetypes for {unknown}")
    return filenames


def safe_name(title: str) -> str:
    return re.sub(r"[^\w.-]+", "_", title).strip("_") or "untitled"


def threaded_loader(filenames, workers):
    """Yield filenames and futures of their decoded AXDFiles in order.

    Up to `workers` files are decoded ahead in background threads, so the
    current file can be written while the next ones are read."""
    filenames = iter(filenames)
    with ThreadPoolExecutor(workers) as tpe:
        pending = deque(
            (filename, tpe.submit(load_axd, filename))
            for filename in islice(filenames, workers)
        )
        while pending:
            filename, fut = pending.popleft()
            for filename_ahead in islice(filenames, 1):
                pending.append((filename_ahead, tpe.submit(load_axd, filename_ahead)))
            yield filename, fut


def describe(axd: AXDFile) -> dict:
    """Summarize calibration and metadata of a decoded file as plain JSON types."""
    images = {}
    for index, image in sorted(axd.images.items()):
        images[str(index)] = {
            "title": image.title,
            "shape": list(image.shape),
            "xreal": image.xreal,
            "yreal": image.yreal,
            "xoffset": image.xoffset,
            "yoffset": image.yoffset,
            "xy_unit": image.xy_unit,
            "z_unit": image.z_unit,
            "metadata": image.metadata,
        }
    spectra = {}
    for index, collection in sorted(axd.spectra.items()):
        spectra[str(index)] = {
            "title": collection.title,
            "x_label": collection.x_label,
            "xy_unit": collection.xy_unit,
            "spectra": [
                {
                    "title": spectrum.title,
                    "y_label": spectrum.y_label,
                    "location": list(spectrum.location),
                    "npoints": len(spectrum.data),
                    "start": spectrum.xoffset,
                    "step": spectrum.step,
                    "metadata": spectrum.metadata,
                }
                for spectrum in collection
            ],
        }
    return {
        "filename": axd.filename,
        "importer": axd.importer,
        "images": images,
        "spectra": spectra,
    }


def list_contents(axd: AXDFile, filename: pathlib.Path):
    echo(f"{filename.name}:")
    for index, image in sorted(axd.images.items()):
        rows, cols = image.shape
        echo(
            f"  image {index}: {image.title} ({cols} x {rows} px, "
            f"{image.xreal:.4g} x {image.yreal:.4g} {image.xy_unit}, "
            f"z in {image.z_unit})"
        )
    for index, collection in sorted(axd.spectra.items()):
        if not index:
            continue
        for spectrum in collection:
            wavenumbers = spectrum.wavenumbers
            echo(
                f"  spectrum {index}: {spectrum.title} ({len(wavenumbers)} points, "
                f"{wavenumbers[0]:.6g} to {wavenumbers[-1]:.6g} {spectrum.x_label})"
            )


def export(axd: AXDFile, filename: pathlib.Path, parent_path, output_type, verbose):
    exporter = EXPORTER_MAP[output_type]
    stem = filename.stem

    for index, image in sorted(axd.images.items()):
        export_path = parent_path / f"{stem}_{index}_{safe_name(image.title)}.{output_type}"
        if verbose:
            echo("Writing " + str(export_path))
        exporter(export_path, image.data)

    for index, collection in sorted(axd.spectra.items()):
        if not index:
            continue  # the aggregate only repeats the individual spectra
        for spectrum in collection:
            export_path = parent_path / (
                f"{stem}_spectrum{index}_{safe_name(spectrum.title)}.{output_type}"
            )
            if verbose:
                echo("Writing " + str(export_path))
            exporter(export_path, np.stack([spectrum.wavenumbers, spectrum.data]))

    metadata_path = parent_path / f"{stem}_metadata.json"
    if verbose:
        echo("Writing " + str(metadata_path))
    with metadata_path.open("w", encoding="utf8") as fp:
        json.dump(describe(axd), fp, indent=2, ensure_ascii=False)


@cloup.command(epilog="Reads Analysis Studio XML (.axd) files.")
@cloup.option_group(
    "Output",
    click.option(
        "--output-path",
        type=click.Path(file_okay=False, dir_okay=True, path_type=pathlib.Path),
    ),
    click.option("--output-type", type=click.Choice(EXPORTER_MAP), default="npy"),
    click.option("--list", "list_only", is_flag=True),
)
@cloup.option_group(
    "Processing",
    click.option("--workers", type=int, callback=at_least(1), default=MAX_WORKERS),
    click.option("--stop-on-error", is_flag=True),
)
@click.option("--verbose", is_flag=True)
@click.option("--disable-progress", is_flag=True)
@click.argument(
    "filenames",
    nargs=-1,
    type=click.Path(
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        path_type=pathlib.Path,
    ),
    required=True,
    callback=suffix,
)
def main(
    output_path,
    output_type,
    list_only,
    workers,
    stop_on_error,
    verbose,
    disable_progress,
    filenames: list[pathlib.Path],
):
    """Decode the height maps and spectra in FILENAMES and write them as arrays.

    Every image is written as its own array, every spectrum as a 2 x N array
    of wavenumbers and values, and calibration and metadata go to a JSON
    file next to them.

    If output-path is "absolute" (i.e. starts with "C:\\" or "/"), all results
    will be written to the same directory, and identically-named files will clobber
    each other.

    If output-path is "relative", then a directory will be created in the same
    directory as the input file.
    """
    # prepare output folders early
    if list_only:
        pass
    elif output_path is None:
        pass
    elif output_path.is_absolute():
        if verbose:
            echo("Creating " + str(output_path))
        output_path.mkdir(parents=True, exist_ok=True)
    else:
        for parent in {filename.parent / output_path for filename in filenames}:
            if verbose:
                echo("Creating " + str(parent))
            parent.mkdir(parents=True, exist_ok=True)

    with warnings.catch_warnings():
        warnings.simplefilter("always", SkippedItemWarning)
        warnings.showwarning = show_skipped
        for filename, fut in tqdm(
            threaded_loader(filenames, workers),
            total=len(filenames),
            smoothing=0,
            miniters=1,
            leave=True,
            position=0,
            desc="Files completed",
            unit="file",
            disable=disable_progress,
        ):
            try:
                axd = fut.result()
            except Exception as e:
                message = f"Unhandled error processing {str(filename)}."
                if stop_on_error:
                    raise RuntimeError(message) from e
                else:
                    echo(f"{message} {e} Continuing...", err=True)
                    continue

            if list_only:
                list_contents(axd, filename)
                continue

            if output_path is None:
                parent_path = filename.parent
            elif output_path.is_absolute():
                parent_path = output_path
            else:
                parent_path = filename.parent / output_path

            export(axd, filename, parent_path, output_type, verbose)
