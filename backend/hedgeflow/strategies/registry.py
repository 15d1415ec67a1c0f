from typing import Dict, Type

from hedgeflow.core.config import StrategyInstanceConfig, StrategyKind
from hedgeflow.core.exceptions import ConfigurationError
from hedgeflow.strategies.atm_scalp import AtmSingleLegBuilder
from hedgeflow.strategies.base import TopologyBuilder
from hedgeflow.strategies.delta_neutral import DeltaNeutralBuilder
from hedgeflow.strategies.iron_condor import IronCondorBuilder


class StrategyRegistry:
    """
    Maps a strategy kind to the builder for its topology.
    """
    _builders: Dict[StrategyKind, Type[TopologyBuilder]] = {
        StrategyKind.SPREAD: IronCondorBuilder,
        StrategyKind.DELTA_NEUTRAL: DeltaNeutralBuilder,
        StrategyKind.SINGLE_LEG: AtmSingleLegBuilder,
    }

    @classmethod
    def get_builder_class(cls, kind: StrategyKind) -> Type[TopologyBuilder]:
        builder = cls._builders.get(kind)
        if builder is None:
            raise ConfigurationError(f"No builder registered for {kind}")
        return builder

    @classmethod
    def create(cls, config: StrategyInstanceConfig) -> TopologyBuilder:
        return cls.get_builder_class(config.kind)(config)

    @classmethod
    def list_kinds(cls):
        return [k.value for k in cls._builders]
