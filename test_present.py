"""PresentMask and RWAState reduce/expand behaviour."""

import pytest
import torch

from rwa_pytorch import RWA, PresentMask, ShapeMismatchError

from conftest import randomize


def test_mask_basics():
  mask = PresentMask([1, 0, True, False, True])
  assert tuple(mask) == (True, False, True, False, True)
  assert mask.num_present == 3
  assert mask.indices() == [0, 2, 4]
  assert PresentMask.full(3) == (True, True, True)
  assert PresentMask.from_lengths([3, 1, 2], 1) == (True, False, True)
  assert PresentMask([True, False]).is_subset(PresentMask.full(2))
  assert not PresentMask.full(2).is_subset(PresentMask([True, False]))


def test_reduce_rows_keeps_left_to_right_order():
  mask = PresentMask([True, True, False, True])
  packed = torch.arange(6.).view(3, 2)  # rows for slots 0, 1, 3
  reduced = mask.reduce_rows(packed, [True, False, False, True])
  assert torch.equal(reduced, torch.tensor([[0., 1.], [4., 5.]]))


def test_expand_rows_fills_missing_slots():
  mask = PresentMask([False, True, False, True])
  packed = torch.tensor([[1., 2.], [3., 4.]])
  expanded = mask.expand_rows(packed, PresentMask.full(4), fill=-1.)
  assert torch.equal(expanded, torch.tensor(
      [[-1., -1.], [1., 2.], [-1., -1.], [3., 4.]]))


def test_reduce_expand_round_trip():
  full = PresentMask([True, True, True, False, True])
  sub = PresentMask([False, True, True, False, True])
  packed = torch.randn(full.num_present, 3)
  reduced = full.reduce_rows(packed, sub)
  expanded = sub.expand_rows(reduced, full, fill=123.)
  assert torch.equal(full.reduce_rows(expanded, sub), reduced)


def test_mask_errors():
  mask = PresentMask([True, False, True])
  with pytest.raises(ShapeMismatchError):
    mask.reduce_rows(torch.zeros(3, 2), [True, False, False])
  with pytest.raises(ShapeMismatchError):
    mask.reduce_rows(torch.zeros(2, 2), [False, True, False])
  with pytest.raises(ShapeMismatchError):
    mask.expand_rows(torch.zeros(2, 2), [True, False, False])


def test_state_reduce_expand_round_trip(stable):
  torch.manual_seed(5)
  block = randomize(RWA(3, 2, stable=stable))
  state = block.step(block.start(4), torch.randn(4, 3)).state
  sub = PresentMask([True, False, True, True])

  reduced = state.reduce(sub)
  assert reduced.present == sub
  assert reduced.hidden.shape == (3, 2)
  assert not reduced.first_step

  expanded = reduced.expand(state.present)
  assert torch.equal(expanded.numerator[1], torch.zeros(2))
  if stable:
    assert torch.isinf(expanded.max_log_weight[1]).all()
  else:
    assert expanded.max_log_weight is None

  again = expanded.reduce(sub)
  for name in ('hidden', 'numerator', 'denominator', 'max_log_weight'):
    a, b = getattr(again, name), getattr(reduced, name)
    assert (a is None and b is None) or torch.equal(a, b)
