"""Checks the hand-written RWA backward pass against finite differences and autograd."""

import torch
from torch.autograd import gradcheck

from rwa_pytorch import RWA, Batch, PresentMask, map_sequence
from rwa_pytorch.rwa import RWAFunction, RWAScript

from conftest import random_batches, randomize


def random_weights(block):
  return [p.detach().clone().requires_grad_() for p in block.params()[1:]]


def test_step_function_gradcheck_naive():
  torch.manual_seed(0)
  block = randomize(RWA(3, 4, stable=False).double())
  x = torch.randn(5, 3, dtype=torch.float64, requires_grad=True)
  hidden = torch.randn(5, 4, dtype=torch.float64, requires_grad=True)
  numerator = torch.randn(5, 4, dtype=torch.float64, requires_grad=True)
  denominator = (torch.rand(5, 4, dtype=torch.float64) + 0.5).requires_grad_()

  def step(x, hidden, numerator, denominator, *weights):
    return RWAFunction.apply(
        True, False, False, x, hidden, numerator, denominator, None, *weights)

  assert gradcheck(step, (x, hidden, numerator, denominator, *random_weights(block)))


def test_step_function_gradcheck_stable():
  """With the running max above every log-weight, the max is locally constant."""
  torch.manual_seed(1)
  block = randomize(RWA(3, 4, stable=True).double(), std=0.3)
  x = 0.5 * torch.randn(5, 3, dtype=torch.float64)
  x.requires_grad_()
  hidden = torch.randn(5, 4, dtype=torch.float64, requires_grad=True)
  numerator = torch.randn(5, 4, dtype=torch.float64, requires_grad=True)
  denominator = (torch.rand(5, 4, dtype=torch.float64) + 0.5).requires_grad_()
  max_log_weight = torch.full((5, 4), 6.0, dtype=torch.float64)

  def step(x, hidden, numerator, denominator, *weights):
    return RWAFunction.apply(
        True, True, False, x, hidden, numerator, denominator, max_log_weight, *weights)

  assert gradcheck(step, (x, hidden, numerator, denominator, *random_weights(block)))


def test_module_gradcheck(random_block):
  """Whole-sequence check through the module, with one sequence ending early."""
  x = torch.randn(5, 3, 3, dtype=torch.float64, requires_grad=True)
  lengths = torch.tensor([5, 2, 5])
  params = list(random_block.parameters())

  def run(x, *params):
    return random_block(x, lengths=lengths)[0]

  assert gradcheck(run, (x, *params))


def test_block_propagate_matches_autograd(random_block):
  """map_sequence/propagate agrees with autograd through the reference recurrence."""
  batches = random_batches(3)
  upstream = [torch.randn_like(b.packed[:, :2]) for b in batches]

  grad = {}
  result = map_sequence(random_block, batches)
  input_grads = result.propagate(upstream, grad)

  state = random_block.start(3)
  loss = 0
  for batch, up in zip(batches, upstream):
    if batch.present != state.present:
      state = state.reduce(batch.present)
    output, state = RWAScript(random_block.stable, random_block.params(), state, batch.packed)
    loss = loss + (output * up).sum()
  loss.backward()

  for batch, actual in zip(batches, input_grads):
    torch.testing.assert_close(actual, batch.packed.grad)
  assert len(grad) == 11
  for param in random_block.parameters():
    torch.testing.assert_close(grad[param], param.grad)


def test_block_propagate_into_param_grad(random_block):
  batches = random_batches(3)
  upstream = [torch.ones(b.present.num_present, 2, dtype=torch.float64) for b in batches]

  grad = {}
  map_sequence(random_block, batches).propagate(upstream, grad)
  assert all(p.grad is None for p in random_block.parameters())
  map_sequence(random_block, batches).propagate(upstream)
  for param in random_block.parameters():
    torch.testing.assert_close(param.grad, grad[param])


def test_block_propagate_matches_module(random_block):
  x = torch.randn(4, 2, 3, dtype=torch.float64, requires_grad=True)
  output, _ = random_block(x)
  output.sum().backward()

  grad = {}
  full = PresentMask.full(2)
  result = map_sequence(random_block, [Batch(x[t].detach(), full) for t in range(4)])
  input_grads = result.propagate([torch.ones(2, 2, dtype=torch.float64)] * 4, grad)
  torch.testing.assert_close(torch.stack(input_grads), x.grad)
  for param in random_block.parameters():
    torch.testing.assert_close(grad[param], param.grad)
