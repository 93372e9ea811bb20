from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from omegaconf import DictConfig, OmegaConf

from .options import CalibratorOptions

DEFAULT_CONFIG = Path(__file__).parent / "defaults.yaml"


@dataclass
class CalibrationConfig:
    _calibrator_options: CalibratorOptions = field(
        default_factory=CalibratorOptions
    )

    time_offset_imu_to_cam: float = 0.0  # seconds

    @classmethod
    def load_default(cls) -> "CalibrationConfig":
        """Load the defaults shipped with the package."""
        config = cls()
        config.load(DEFAULT_CONFIG)
        return config

    def load(
        self,
        yaml: Path | str,
        cli_overrides: Sequence[str] | None = None,
    ) -> None:
        """Load configuration from a YAML file and apply any overrides."""
        cfg = OmegaConf.load(str(yaml))
        if cli_overrides:
            cfg = OmegaConf.merge(
                cfg, OmegaConf.from_dotlist(list(cli_overrides))
            )
        OmegaConf.resolve(cfg)

        self._update_from_cfg(cfg)

    def _update_from_cfg(self, cfg: DictConfig) -> None:
        """Update object attributes from a config."""
        self._calibrator_options = CalibratorOptions.load(cfg.calibration)
        self.time_offset_imu_to_cam = float(
            cfg.get("time_offset_imu_to_cam", 0.0)
        )

    @property
    def calibrator_options(self) -> CalibratorOptions:
        return self._calibrator_options
