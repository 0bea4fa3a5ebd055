from .tdlmm import TDLMM
from .config import TDLMMConfig
from .DataGenerator import DataGenerator
from .diagnostics import DiagnosticsLog, compute_diagnostics, move_acceptance
from .exceptions import (TDLMMError, NonPositiveDefiniteError, ShrinkageDegeneracyError,
                         SamplerError, SamplingInterrupted)
from .exposure import ExposureData, NodeVals
from .families import Continuous, Binary, ZeroInflatedCount, all_families
from .likelihood import mix_mhr, MHRResult
from .moves import all_moves, Grow, Prune, Change, SwitchExposure
from .params import SplitRule, Tree, TreePair, ModelState
from .priors import TreePrior, ShrinkagePrior
from .samplers import Sampler, TDLMMSampler, all_samplers
from .util import Dataset

import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ["TDLMM", "TDLMMConfig", "DataGenerator",
           "DiagnosticsLog", "compute_diagnostics", "move_acceptance",
           "TDLMMError", "NonPositiveDefiniteError", "ShrinkageDegeneracyError",
           "SamplerError", "SamplingInterrupted",
           "ExposureData", "NodeVals",
           "Continuous", "Binary", "ZeroInflatedCount", "all_families",
           "mix_mhr", "MHRResult",
           "all_moves", "Grow", "Prune", "Change", "SwitchExposure",
           "SplitRule", "Tree", "TreePair", "ModelState",
           "TreePrior", "ShrinkagePrior",
           "Sampler", "TDLMMSampler", "all_samplers", "Dataset"]
