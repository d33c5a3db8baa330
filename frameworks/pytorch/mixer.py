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

"""Two-input affine mixer used to build the RWA's gate and context transforms.

  out = activation(in1(a) + in2(b))

where `in1` and `in2` are independent fully-connected layers with their own
biases.
"""

import torch
import torch.nn as nn
import torch.nn.functional as F


__all__ = [
    'AddMixer',
    'add_mix',
]


def add_mix(a, b, in1_weight, in1_bias, in2_weight, in2_bias, activation=None):
  """Functional form of AddMixer, for callers holding the raw tensors."""
  out = F.linear(a, in1_weight, in1_bias) + F.linear(b, in2_weight, in2_bias)
  if activation == 'tanh':
    out = torch.tanh(out)
  return out


class AddMixer(nn.Module):
  """
  Sums two affine projections of two inputs, then applies an activation.

  Variables:
    in1: nn.Linear(in1_size, out_size), applied to the first input.
    in2: nn.Linear(in2_size, out_size), applied to the second input.

  `activation` is either 'tanh' or None (identity). It holds no parameters,
  so `parameters()` yields in1.weight, in1.bias, in2.weight, in2.bias in
  that order.
  """

  def __init__(self, in1_size, in2_size, out_size, activation=None):
    super().__init__()
    if activation not in (None, 'tanh'):
      raise ValueError(f'AddMixer: unsupported activation {activation!r}')
    self.in1 = nn.Linear(in1_size, out_size)
    self.in2 = nn.Linear(in2_size, out_size)
    self.activation = activation

  def reset_parameters(self):
    nn.init.xavier_uniform_(self.in1.weight)
    nn.init.xavier_uniform_(self.in2.weight)
    nn.init.zeros_(self.in1.bias)
    nn.init.zeros_(self.in2.bias)

  def forward(self, a, b):
    return add_mix(a, b, self.in1.weight, self.in1.bias, self.in2.weight,
                   self.in2.bias, self.activation)

  def extra_repr(self):
    return f'activation={self.activation}'
