from __future__ import annotations

import typer
from typing import Optional

from strawbkg.vis.hdf import save_event_png

app = typer.Typer(help="Background flagging visualization tools")

@app.command("event-to-png")
def event_to_png(
    events_h5: str = typer.Argument(..., help="HDF5 event file that was flagged"),
    products_h5: str = typer.Argument(..., help="HDF5 products file containing /products/ch_flags"),
    event_index: int = typer.Option(0, "--event", "-e", help="Row of the event in the file"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Output PNG path"),
):
    """Render one event's hits (x-y) coloured by propagated flag."""
    out_png = save_event_png(events_h5, products_h5, out_png=out, event_index=event_index)
    typer.echo(f"Wrote {out_png}")

if __name__ == "__main__":
    app()
