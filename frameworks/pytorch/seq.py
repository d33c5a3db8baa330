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

"""Steps a recurrent block over a packed, variable-length batch.

A sequence batch is a list of timesteps. Each timestep holds the packed
inputs of the sequences that are still running and their PresentMask.
Sequences may end at different times but cannot restart, so each mask is a
subset of the one before it.
"""

import logging
from typing import NamedTuple

import torch

from .errors import ShapeMismatchError
from .present import PresentMask


__all__ = [
    'Batch',
    'MapResult',
    'map_sequence',
    'batches_from_padded',
]

logger = logging.getLogger(__name__)


class Batch(NamedTuple):
  packed: torch.Tensor
  present: PresentMask


def batches_from_padded(input, lengths):
  """Packs a `[T, B, features]` tensor into Batches using per-sequence lengths."""
  batches = []
  full = PresentMask.full(input.shape[1])
  lengths = [int(l) for l in lengths]
  for t in range(input.shape[0]):
    mask = PresentMask.from_lengths(lengths, t)
    if mask.num_present == 0:
      break
    batches.append(Batch(full.reduce_rows(input[t], mask), mask))
  return batches


class MapResult:
  """Outputs of `map_sequence`, plus the step results needed to back-propagate."""

  def __init__(self, block, start, steps):
    self.block = block
    self.start = start
    self.steps = steps
    self.outputs = [Batch(s.output, s.state.present) for s in steps]

  @property
  def final_state(self):
    if not self.steps:
      return self.start
    return self.steps[-1].state

  def propagate(self, upstream, grad=None):
    """
    Back-propagates through every timestep, last to first.

    Arguments:
      upstream: list of Tensors (or None for zeros), the gradient of each
        timestep's packed output.
      grad: (optional) dict mapping parameters to gradient tensors; see
        `StepResult.propagate`.

    Returns:
      list of Tensors, the gradient of each timestep's packed input.
    """
    if len(upstream) != len(self.steps):
      raise ShapeMismatchError(
          f'got {len(upstream)} output gradient(s) for {len(self.steps)} step(s)')
    input_grads = [None] * len(self.steps)
    state_grad = None
    for t in reversed(range(len(self.steps))):
      step = self.steps[t]
      if state_grad is not None and state_grad.present != step.state.present:
        state_grad = _expand(state_grad, step.state.present)
      input_grads[t], state_grad = step.propagate(upstream[t], state_grad, grad)
    if state_grad is not None:
      if state_grad.present != self.start.present:
        state_grad = _expand(state_grad, self.start.present)
      self.block.propagate_start(state_grad, grad)
    return input_grads


def _expand(state_grad, mask):
  logger.debug('expanding state gradient from %d to %d sequence(s)',
               state_grad.present.num_present, mask.num_present)
  return state_grad.expand(mask)


def map_sequence(block, batches):
  """
  Applies `block` to a list of Batches.

  The state is reduced to each timestep's PresentMask before stepping.

  Returns:
    MapResult.
  """
  batches = list(batches)
  if not batches:
    raise ShapeMismatchError('map_sequence: no timesteps')
  start = block.start(len(batches[0].present))
  state = start
  steps = []
  for batch in batches:
    if batch.present != state.present:
      logger.debug('reducing state from %d to %d sequence(s)',
                   state.present.num_present, batch.present.num_present)
      state = state.reduce(batch.present)
    result = block.step(state, batch.packed)
    steps.append(result)
    state = result.state
  return MapResult(block, start, steps)
