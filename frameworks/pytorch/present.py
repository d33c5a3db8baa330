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

"""Present masks for variable-length batches.

A batch of sequences is stepped one timestep at a time. At each step only
some batch slots are still active; their rows are packed together, in slot
order, into a `[num_present, width]` tensor. A PresentMask records which
slots those rows belong to:

    mask   = (True, False, True)
    packed = [row for slot 0,
              row for slot 2]
"""

import torch

from .errors import ShapeMismatchError


__all__ = [
    'PresentMask'
]


class PresentMask(tuple):
  """Immutable tuple of booleans, one per batch slot."""

  def __new__(cls, flags):
    return super().__new__(cls, (bool(f) for f in flags))

  @classmethod
  def full(cls, n):
    return cls([True] * n)

  @classmethod
  def from_lengths(cls, lengths, t):
    """Mask of the sequences in `lengths` that are still running at step `t`."""
    return cls(int(l) > t for l in lengths)

  @property
  def num_present(self):
    return sum(self)

  def indices(self):
    return [i for i, p in enumerate(self) if p]

  def is_subset(self, other):
    return len(self) == len(other) and all(o or not s for s, o in zip(self, other))

  def reduce_rows(self, packed, new_mask):
    """Drops the rows of slots that are present here but not in `new_mask`."""
    new_mask = PresentMask(new_mask)
    self._check_packed(packed)
    if not new_mask.is_subset(self):
      raise ShapeMismatchError(
          f'cannot reduce mask {tuple(self)} to non-subset {tuple(new_mask)}')
    if new_mask == self:
      return packed
    keep = [row for row, slot in enumerate(self.indices()) if new_mask[slot]]
    index = torch.tensor(keep, dtype=torch.long, device=packed.device)
    return packed.index_select(0, index)

  def expand_rows(self, packed, new_mask, fill=0.0):
    """Re-inserts rows for slots present in `new_mask` but absent here."""
    new_mask = PresentMask(new_mask)
    self._check_packed(packed)
    if not self.is_subset(new_mask):
      raise ShapeMismatchError(
          f'cannot expand mask {tuple(self)} to non-superset {tuple(new_mask)}')
    if new_mask == self:
      return packed
    position = {slot: row for row, slot in enumerate(new_mask.indices())}
    index = torch.tensor([position[slot] for slot in self.indices()],
                         dtype=torch.long, device=packed.device)
    out = packed.new_full((new_mask.num_present,) + tuple(packed.shape[1:]), fill)
    return out.index_copy(0, index, packed)

  def _check_packed(self, packed):
    if packed.shape[0] != self.num_present:
      raise ShapeMismatchError(
          f'packed tensor has {packed.shape[0]} row(s) but mask has '
          f'{self.num_present} present slot(s)')

  def __repr__(self):
    return f'PresentMask({list(self)})'
