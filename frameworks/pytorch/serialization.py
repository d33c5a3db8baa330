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

"""Saving and restoring blocks.

A saved block is a `torch.save`d dict:

  {'type': str, 'config': dict, 'parameters': [Tensor, ...]}

with parameters in `block.parameters()` order. Loading looks `type` up in a
caller-supplied Registry; nothing is registered at import time.
"""

import logging

import torch

from .errors import RWAError, ShapeMismatchError
from .rwa import RWA


__all__ = [
    'Registry',
    'default_registry',
    'save_block',
    'load_block',
]

logger = logging.getLogger(__name__)


class Registry:
  """Maps serializer type names to factories taking a block's config."""

  def __init__(self):
    self._factories = {}

  def register(self, name, factory):
    if name in self._factories:
      raise ValueError(f'Registry: {name!r} is already registered')
    self._factories[name] = factory

  def lookup(self, name):
    try:
      return self._factories[name]
    except KeyError:
      raise RWAError(f'Registry: no factory for {name!r}') from None

  def __contains__(self, name):
    return name in self._factories


def default_registry():
  """A new Registry that knows the blocks defined in this package."""
  registry = Registry()
  registry.register(RWA.SERIALIZER_TYPE, lambda config: RWA(**config))
  return registry


def save_block(block, f):
  payload = {
      'type': block.serializer_type(),
      'config': block.config(),
      'parameters': [p.detach().cpu().clone() for p in block.parameters()],
  }
  torch.save(payload, f)
  logger.debug('saved %s with %d parameter(s)', payload['type'],
               len(payload['parameters']))


def load_block(f, registry, map_location='cpu'):
  payload = torch.load(f, map_location=map_location, weights_only=True)
  block = registry.lookup(payload['type'])(payload['config'])
  params = list(block.parameters())
  saved = payload['parameters']
  if len(saved) != len(params):
    raise ShapeMismatchError(
        f'{payload["type"]}: saved {len(saved)} parameter(s), block has {len(params)}')
  with torch.no_grad():
    for i, (param, value) in enumerate(zip(params, saved)):
      if param.shape != value.shape:
        raise ShapeMismatchError(
            f'{payload["type"]}: parameter {i} has shape {tuple(value.shape)}, '
            f'expected {tuple(param.shape)}')
      param.copy_(value)
  logger.debug('loaded %s', payload['type'])
  return block
