from __future__ import annotations

import itertools
import logging
import numbers

logger = logging.getLogger(__name__)


def save_stream_to_arff(stream, relation_name="stream", output_file="stream.arff", max_instances=None):
    """
    Write a finite river stream of ``(x, y)`` pairs to an ARFF file.

    Numeric features become NUMERIC attributes, any other feature becomes a
    nominal attribute listing the values seen. The target is written last as
    the nominal attribute ``class``. The attribute set is taken from the first
    example.
    """
    if max_instances is not None:
        stream = itertools.islice(stream, max_instances)
    rows = list(stream)
    if not rows:
        raise ValueError("Stream is empty")

    feature_names = list(rows[0][0].keys())
    nominal = {
        name: sorted({str(x[name]) for x, _ in rows if x.get(name) is not None})
        for name in feature_names
        if any(_is_nominal(x.get(name)) for x, _ in rows)
    }
    class_labels = sorted({str(y) for _, y in rows})

    with open(output_file, "w", encoding="utf-8") as f:
        f.write(f"@RELATION {relation_name}\n\n")
        for name in feature_names:
            if name in nominal:
                f.write(f"@ATTRIBUTE {name} {{{','.join(nominal[name])}}}\n")
            else:
                f.write(f"@ATTRIBUTE {name} NUMERIC\n")
        f.write(f"@ATTRIBUTE class {{{','.join(class_labels)}}}\n\n")
        f.write("@DATA\n")
        for x, y in rows:
            values = [_format(x.get(name)) for name in feature_names]
            values.append(str(y))
            f.write(",".join(values) + "\n")

    logger.info("Saved %d examples of %s to %s", len(rows), relation_name, output_file)
    return output_file


def _format(value) -> str:
    if value is None:
        return "?"
    return str(value)


def _is_nominal(value) -> bool:
    if value is None:
        return False
    return not isinstance(value, numbers.Number) or isinstance(value, bool)
