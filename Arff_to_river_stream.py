from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Tuple, Union

import numpy as np
from scipy.io.arff import loadarff

logger = logging.getLogger(__name__)


def arff_to_river_stream(
    filepath: str,
    task: str = "classification",
    target: Union[int, str] = -1,
) -> Iterator[Tuple[Dict[str, Any], Any]]:
    """
    Read an ARFF file and yield its rows as river ``(x, y)`` pairs.

    Args:
        filepath: Path to the ARFF file.
        task: "classification" (default) or "regression".
        target: Attribute used as y, either an index into the attribute list
            (default -1, the last attribute) or an attribute name.

    Yields:
        ``(x, y)`` where x maps feature names to Python values. Nominal values
        are decoded to ``str``, missing values (``?``) become ``None``. Class
        labels that look like integers are converted to ``int``. Rows with a
        missing target are skipped.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If ``task`` or ``target`` is invalid.
    """
    if task not in ("classification", "regression"):
        raise ValueError(f"Invalid task '{task}'. Use 'classification' or 'regression'.")

    try:
        with open(filepath, "r", encoding="utf-8") as f:
            data, meta = loadarff(f)
    except FileNotFoundError:
        logger.error("ARFF file not found: %s", filepath)
        raise
    except Exception:
        logger.exception("Could not load ARFF file %s", filepath)
        raise

    names = meta.names()
    if isinstance(target, int):
        try:
            target_name = names[target]
        except IndexError:
            raise ValueError(f"Target index {target} out of range for attributes {names}") from None
    elif target in names:
        target_name = target
    else:
        raise ValueError(f"Target name '{target}' not found in attributes {names}")

    feature_names = [n for n in names if n != target_name]
    logger.info("Reading %s: task=%s target=%s features=%d", filepath, task, target_name, len(feature_names))

    n_skipped = 0
    for row in data:
        x = {name: _feature_value(row[name]) for name in feature_names}
        y = _target_value(row[target_name], task)
        if y is None:
            n_skipped += 1
            continue
        yield x, y

    if n_skipped:
        logger.warning("Skipped %d rows of %s with a missing target", n_skipped, filepath)


def _feature_value(v):
    if isinstance(v, bytes):
        v = _decode(v)
        return None if v == "?" else v
    if isinstance(v, np.integer):
        return int(v)
    if isinstance(v, np.floating):
        return None if np.isnan(v) else float(v)
    return v


def _target_value(v, task: str):
    if isinstance(v, bytes):
        v = _decode(v)
        if v == "?":
            return None
        if task == "regression":
            try:
                return float(v)
            except ValueError:
                return None
        try:
            return int(v)
        except ValueError:
            return v
    if isinstance(v, (np.integer, np.floating)):
        if np.isnan(v):
            return None
        if task == "regression":
            return float(v)
        return int(v) if float(v).is_integer() else float(v)
    return v


def _decode(v: bytes):
    try:
        return v.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Could not decode %r as utf-8, keeping the raw bytes", v)
        return v
