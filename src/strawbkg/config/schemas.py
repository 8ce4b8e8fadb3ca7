from __future__ import annotations
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional, Union

class RunCfg(BaseModel):
    """
    Global run controls.
    """

    # Diagnostics
    diagnostics_level: int = 1  # 0=off, 1=minimal, 2=verbose
    print_frequency: int = 101  # event banner every N events (diagnostics_level >= 1)

    # Limits
    max_events: Optional[int] = None

    @field_validator("diagnostics_level")
    def _diag_range(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("diagnostics_level must be 0, 1, or 2")
        return v

    @field_validator("print_frequency")
    def _freq_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("print_frequency must be >= 1")
        return v

class IOCfg(BaseModel):
    """
    I/O paths for batch runs.

    TOML:

    [io]
    input_path  = "events.h5"
    output_path = "flags.h5"
    """

    input_path: str = ""
    output_path: str = ""


class TLTCfg(BaseModel):
    """
    Two-Level Threshold: single pass, fixed radius and time window.

    distance   : max transverse hit-cluster separation [mm]
    time       : max |dt| between hit and cluster [ns]
    time_scale : velocity-equivalent factor turning dt into mm for ranking [mm/ns]
    """
    distance: float = 20.0
    time: float = 30.0
    time_scale: float = 1.0
    tie_tolerance: float = 1e-6


class TNTCfg(BaseModel):
    """
    Two-Niveau Threshold: density cores, then association of the rest.
    """
    core_distance: float = 10.0
    core_time: float = 20.0
    min_neighbors: int = 2
    assoc_distance: float = 30.0
    assoc_time: float = 40.0
    time_scale: float = 1.0
    keep_singletons: bool = True
    tie_tolerance: float = 1e-6


class TNTBCfg(TNTCfg):
    """
    Boosted Two-Niveau Threshold: association distance scaled per hit by
    clip(sigma_hit / reference_error, min_scale, 1).
    """
    reference_error: float = 5.0
    min_scale: float = 0.25


class ClustererCfg(BaseModel):
    """
    [clusterer]
    variant = "TwoLevelThreshold"   # or "TwoNiveauThreshold", "TwoNiveauThresholdB", or 1/2/3

    [clusterer.tlt] / [clusterer.tnt] / [clusterer.tntb] hold per-variant thresholds.
    The variant is resolved by strawbkg.clustering.make_clusterer.
    """
    variant: Union[int, str] = "TwoLevelThreshold"
    tlt: TLTCfg = Field(default_factory=TLTCfg)
    tnt: TNTCfg = Field(default_factory=TNTCfg)
    tntb: TNTBCfg = Field(default_factory=TNTBCfg)


class QualityCfg(BaseModel):
    min_active_hits: int = 3
    min_stereo_hits: int = 0
    min_planes: int = 2
    n_planes: int = 36
    cluster_position_error: float = 10.0  # mm

    @field_validator("n_planes")
    def _nplanes_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("n_planes must be >= 1")
        return v

    @field_validator("cluster_position_error")
    def _cperr_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("cluster_position_error must be > 0")
        return v


class FlaggingCfg(BaseModel):
    """
    Cluster decision thresholds and output modes.

    background_mask: hit flag names that reject a hit from the filtered output.
    """
    max_isolated: int = 0
    background_mask: List[str] = ["Background"]
    filter_output: bool = False
    flag_combo_hits: bool = True
    flag_straw_hits: bool = False
    save_bkg_clusters: bool = False


class MVACfg(BaseModel):
    """
    [mva]
    use     = true
    cut     = 0.5
    weights = "bkg_mlp.npz"      # relative to the config file
    names   = ["hrho", "shrho", ...]   # must match the weights file input order
    """
    use: bool = True
    cut: float = 0.5
    weights: Optional[str] = None
    names: List[str] = [
        "hrho", "shrho", "crho", "zmin", "zmax", "zgap", "np", "npfrac", "nhits",
    ]

    @model_validator(mode="after")
    def _weights_when_used(self) -> "MVACfg":
        if self.use and not self.weights:
            raise ValueError("mva.weights is required when mva.use = true")
        return self


class VisCfg(BaseModel):
    export_png_on_write: bool = False
    event_index: int = 0


class Config(BaseModel):
    """
    Top-level TOML configuration.
    """

    run: RunCfg = Field(default_factory=RunCfg)
    io: IOCfg = Field(default_factory=IOCfg)
    clusterer: ClustererCfg = Field(default_factory=ClustererCfg)
    quality: QualityCfg = Field(default_factory=QualityCfg)
    flagging: FlaggingCfg = Field(default_factory=FlaggingCfg)
    mva: MVACfg
    vis: VisCfg = Field(default_factory=VisCfg)
