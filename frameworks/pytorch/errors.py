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

"""Error types raised by the RWA cell and its sequence driver."""

import torch


__all__ = [
    'RWAError',
    'ShapeMismatchError',
    'InvariantViolationError',
    'NumericDegenerateError',
    'check_finite',
]


class RWAError(Exception):
  """Base class for all errors raised by rwa_pytorch."""


class ShapeMismatchError(RWAError, ValueError):
  """A tensor's shape disagrees with the state or mask it is paired with."""


class InvariantViolationError(RWAError, RuntimeError):
  """A step record was consumed twice, or never produced."""


class NumericDegenerateError(RWAError, ArithmeticError):
  """A tensor contains NaN or infinite values."""


def check_finite(tensor, what='tensor'):
  """Raises NumericDegenerateError if `tensor` has any non-finite entry.

  The cell never clamps its own outputs; training loops and tests call this
  to surface overflow instead of silently training on it.
  """
  finite = torch.isfinite(tensor)
  if not bool(finite.all()):
    bad = int((~finite).sum())
    raise NumericDegenerateError(f'{what}: {bad} non-finite value(s)')
  return tensor


def check_rows(tensor, rows, what):
  if tensor.dim() != 2 or tensor.shape[0] != rows:
    raise ShapeMismatchError(
        f'{what}: expected {rows} row(s), got shape {tuple(tensor.shape)}')


def check_width(tensor, width, what):
  if tensor.shape[-1] != width:
    raise ShapeMismatchError(
        f'{what}: expected width {width}, got shape {tuple(tensor.shape)}')
