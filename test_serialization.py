"""Saving and restoring RWA blocks."""

import io

import pytest
import torch

from rwa_pytorch import (
    RWA,
    Registry,
    RWAError,
    ShapeMismatchError,
    default_registry,
    load_block,
    save_block,
)

from conftest import randomize


def test_round_trip(stable, tmp_path):
  torch.manual_seed(9)
  block = randomize(RWA(3, 5, stable=stable, batch_first=True))
  path = tmp_path / 'rwa.pt'
  save_block(block, path)

  restored = load_block(path, default_registry())
  assert isinstance(restored, RWA)
  assert restored.config() == block.config()
  for a, b in zip(block.parameters(), restored.parameters()):
    assert torch.equal(a, b)

  x = torch.randn(2, 6, 3)
  with torch.no_grad():
    torch.testing.assert_close(restored(x)[0], block(x)[0], rtol=0, atol=0)


def test_unknown_type():
  buffer = io.BytesIO()
  save_block(RWA(2, 2), buffer)
  buffer.seek(0)
  with pytest.raises(RWAError):
    load_block(buffer, Registry())


def test_registry_is_explicit():
  first = default_registry()
  second = default_registry()
  assert RWA.SERIALIZER_TYPE in first
  first.register('custom', lambda config: RWA(1, 1))
  assert 'custom' not in second
  with pytest.raises(ValueError):
    first.register('custom', lambda config: RWA(1, 1))


def test_shape_mismatch_on_load():
  buffer = io.BytesIO()
  save_block(RWA(3, 2), buffer)
  buffer.seek(0)
  registry = Registry()
  registry.register(RWA.SERIALIZER_TYPE, lambda config: RWA(3, 4))
  with pytest.raises(ShapeMismatchError):
    load_block(buffer, registry)
