"""Shared fixtures for the rwa_pytorch tests."""

import pytest
import torch

from rwa_pytorch import RWA, Batch, PresentMask


# Parameters of a 3-input, 2-hidden RWA in parameters() order, and the
# outputs it must produce for REFERENCE_INPUTS.
REFERENCE_PARAMS = [
    [0.074941, -1.132446],
    [0.63997, -0.21826, 0.88730, 0.25009, 0.11063, 0.72248],
    [0.051791, 0.479197],
    [0.0099470, 0.8399450, -0.2081483, 0.9820264, 0.3257544, 0.1064337],
    [-0.515952, 0.055721],
    [0.97504, 0.35937, -0.37616, 0.69398],
    [0.60679, 0.44104],
    [0.90352, 0.25258, 0.76472, 0.73948, 0.98564, 0.20552],
    [-0.50516, 0.73835],
    [0.26337, 0.28690, -0.29784, -0.79788],
    [-0.017014, 0.803208],
]

REFERENCE_INPUTS = [
    [0.29989, 0.36990, 0.50296],
    [0.37573, 0.29873, 0.22233],
    [0.45905, 0.14858, 0.78369],
]

REFERENCE_OUTPUTS = [
    [0.049205, 0.329647],
    [0.12153, 0.39991],
    [0.20841, 0.49782],
]


def load_reference(block):
  with torch.no_grad():
    for param, values in zip(block.parameters(), REFERENCE_PARAMS):
      param.copy_(torch.tensor(values, dtype=param.dtype).view_as(param))
  return block


def randomize(block, std=0.5):
  with torch.no_grad():
    for param in block.parameters():
      param.normal_(0.0, std)
  return block


def random_batches(input_size, dtype=torch.float64):
  """Two steps with all three sequences present, then three with the middle one done."""
  presents = [(True, True, True), (True, False, True)]
  chunk_lengths = [2, 3]
  batches = []
  for present, length in zip(presents, chunk_lengths):
    mask = PresentMask(present)
    for _ in range(length):
      packed = torch.randn(mask.num_present, input_size, dtype=dtype, requires_grad=True)
      batches.append(Batch(packed, mask))
  return batches


@pytest.fixture(params=[True, False], ids=['stable', 'naive'])
def stable(request):
  return request.param


@pytest.fixture
def reference_block(stable):
  return load_reference(RWA(3, 2, stable=stable))


@pytest.fixture
def random_block(stable):
  torch.manual_seed(1234)
  return randomize(RWA(3, 2, stable=stable).double())
