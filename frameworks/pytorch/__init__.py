# Copyright 2020 LMNT, Inc. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

"""
rwa_pytorch: Recurrent Weighted Average RNNs for PyTorch.
"""

import torch as _

from ._version import __version__
from .errors import (
    RWAError,
    ShapeMismatchError,
    InvariantViolationError,
    NumericDegenerateError,
    check_finite,
)
from .mixer import AddMixer
from .present import PresentMask
from .rwa import RWA, RWAParams, RWAState, StepRecord, StepResult, rwa_forward, rwa_backward
from .seq import Batch, MapResult, map_sequence, batches_from_padded
from .serialization import Registry, default_registry, save_block, load_block

__all__ = [
    'RWA',
    'RWAParams',
    'RWAState',
    'StepRecord',
    'StepResult',
    'rwa_forward',
    'rwa_backward',
    'AddMixer',
    'PresentMask',
    'Batch',
    'MapResult',
    'map_sequence',
    'batches_from_padded',
    'Registry',
    'default_registry',
    'save_block',
    'load_block',
    'RWAError',
    'ShapeMismatchError',
    'InvariantViolationError',
    'NumericDegenerateError',
    'check_finite',
]
