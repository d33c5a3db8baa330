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

"""Base class for recurrent blocks stepped by rwa_pytorch.seq."""

import torch
import torch.nn as nn


__all__ = [
    'BaseRNN'
]


class BaseRNN(nn.Module):
  """
  Common plumbing for recurrent blocks.

  Subclasses implement the block contract used by the sequence driver:

    start(n) -> state
      the initial state for a batch of `n` sequences.
    step(state, x) -> result
      one timestep; `result.output`, `result.state` and
      `result.propagate(grad_output, grad_state, grad)`.
    propagate_start(state_grad, grad)
      accumulates the gradient of the initial state into the parameters.
    parameters()
      the trainable tensors, in a fixed order.

  States must expose `present`, `reduce(mask)` and `expand(mask)`.
  """

  def __init__(
      self,
      input_size,
      hidden_size,
      batch_first):
    super().__init__()
    if input_size <= 0 or hidden_size <= 0:
      raise ValueError(
          f'{type(self).__name__}: input_size and hidden_size must be positive')
    self.input_size = input_size
    self.hidden_size = hidden_size
    self.batch_first = batch_first

  def start(self, n):
    raise NotImplementedError

  def step(self, state, x):
    raise NotImplementedError

  def propagate_start(self, state_grad, grad=None):
    raise NotImplementedError

  def _permute(self, x):
    if self.batch_first:
      return x.permute(1, 0, 2)
    return x

  def _get_final_state(self, output, lengths):
    if lengths is not None:
      cols = torch.arange(output.size(1), device=output.device)
      return output[lengths - 1, cols].unsqueeze(0)
    return output[-1].unsqueeze(0)

  def extra_repr(self):
    return f'input_size={self.input_size}, hidden_size={self.hidden_size}'
