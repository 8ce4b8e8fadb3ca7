import h5py
import numpy as np
import matplotlib.pyplot as plt
from pathlib import Path

from strawbkg.physics.flags import HitFlag

_CATEGORIES = (
    ("background", HitFlag.BKG, "tab:red"),
    ("isolated", HitFlag.ISOLATED, "tab:orange"),
    ("clustered", HitFlag.BKGCLUST, "tab:blue"),
)


def _categorize(flags: np.ndarray) -> np.ndarray:
    """Label each hit with the first matching category, else 'other'."""
    labels = np.full(len(flags), "other", dtype=object)
    for name, bit, _ in reversed(_CATEGORIES):
        labels[(flags & int(bit)) != 0] = name
    return labels


def save_event_png(
    events_h5: str,
    products_h5: str,
    out_png: str | None = None,
    event_index: int = 0,
    product: str = "ch_flags",
):
    """Scatter one event's hits in x-y, coloured by their propagated flag."""
    with h5py.File(events_h5, "r") as f:
        ptr = f["hits/event_ptr"][...]
        if event_index < 0 or event_index >= len(ptr) - 1:
            raise IndexError(f"event_index {event_index} outside file with {len(ptr) - 1} events")
        start, stop = int(ptr[event_index]), int(ptr[event_index + 1])
        x = np.array(f["hits/x"][start:stop], dtype=np.float32)
        y = np.array(f["hits/y"][start:stop], dtype=np.float32)
        event_id = int(f["events/event_id"][event_index])

    with h5py.File(products_h5, "r") as f:
        dset = f"products/{product}"
        if dset not in f:
            raise KeyError(f"{dset} not found in {products_h5}")
        fptr = f[dset]["event_ptr"][...]
        flags = np.array(f[dset]["flag"][int(fptr[event_index]):int(fptr[event_index + 1])], dtype=np.int64)

    if out_png is None:
        out_png = str(Path(products_h5).with_suffix(f".event{event_id}.png"))

    labels = _categorize(flags)
    plt.figure(figsize=(6, 6))
    plt.scatter(x[labels == "other"], y[labels == "other"], s=8, c="0.6", label="other")
    for name, _, color in reversed(_CATEGORIES):
        sel = labels == name
        if np.any(sel):
            plt.scatter(x[sel], y[sel], s=10, c=color, label=name)
    plt.gca().set_aspect("equal")
    plt.xlabel("x [mm]")
    plt.ylabel("y [mm]")
    plt.legend(loc="upper right", fontsize="small")
    plt.title(f"{Path(products_h5).name} : event {event_id}")
    plt.tight_layout()
    plt.savefig(out_png, dpi=150)
    plt.close()
    return out_png
