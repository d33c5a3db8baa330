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

"""Recurrent Weighted Average (RWA) cell.

Implements the RNN from https://arxiv.org/pdf/1703.01253.pdf. The hidden
state is a running average of encoded inputs, weighted by a learned,
input-dependent weight:

  s       = tanh(h)                              # squashed previous hidden
  a       = Wcx @ x + Wch @ s + b_c              # log-weight (context)
  u       = We @ x + b_e                         # encoded input
  g       = tanh(Wmx @ x + Wmh @ s + b_m)        # mask
  z       = u * g
  num'    = num + z * exp(a)
  den'    = den + exp(a)
  h'      = num' / den'                          # new (unsquashed) hidden
  output  = tanh(h')

The stable variant keeps num and den relative to exp(m), where m is the
running maximum of `a`, so that exp() is only ever applied to non-positive
values:

  m'      = a                    on the first step
          = max(a, m)            afterwards
  num'    = num * exp(m - m') + z * exp(a - m')
  den'    = den * exp(m - m') + exp(a - m')

Only the ratio num'/den' is observable, so the common factor exp(m') drops
out and both variants compute the same function.

Gradients are computed by hand from a StepRecord of the forward
intermediates. m is treated as a constant when differentiating: it scales
numerator and denominator alike, so every output gradient is exact.
"""

import logging
from typing import NamedTuple, Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from .base_rnn import BaseRNN
from .errors import (
    InvariantViolationError, ShapeMismatchError, check_rows, check_width)
from .mixer import AddMixer, add_mix
from .present import PresentMask


__all__ = [
    'RWA',
    'RWAParams',
    'RWAState',
    'StepRecord',
    'StepResult',
    'RWAFunction',
    'RWAScript',
    'rwa_forward',
    'rwa_backward',
]

logger = logging.getLogger(__name__)


class RWAParams(NamedTuple):
  """The RWA's trainable tensors, in `RWA.parameters()` order."""
  init: Optional[torch.Tensor]
  enc_w: torch.Tensor
  enc_b: torch.Tensor
  mask_xw: torch.Tensor
  mask_xb: torch.Tensor
  mask_hw: torch.Tensor
  mask_hb: torch.Tensor
  ctx_xw: torch.Tensor
  ctx_xb: torch.Tensor
  ctx_hw: torch.Tensor
  ctx_hb: torch.Tensor


class RWAState(NamedTuple):
  """
  Hidden state of an RWA block, or the gradient of one.

  hidden is the previous unsquashed hidden value. It is kept apart from
  numerator and denominator so the first timestep can be evaluated before
  any weight has been accumulated. max_log_weight is only tracked by the
  stable variant and is None in gradients.

  All tensors have one row per present slot of `present`.
  """
  hidden: torch.Tensor
  numerator: torch.Tensor
  denominator: torch.Tensor
  max_log_weight: Optional[torch.Tensor]
  first_step: bool
  present: PresentMask

  @property
  def num_present(self):
    return self.present.num_present

  def reduce(self, mask):
    mask = PresentMask(mask)
    return RWAState(
        self.present.reduce_rows(self.hidden, mask),
        self.present.reduce_rows(self.numerator, mask),
        self.present.reduce_rows(self.denominator, mask),
        _maybe(self.present.reduce_rows, self.max_log_weight, mask),
        self.first_step,
        mask)

  def expand(self, mask):
    mask = PresentMask(mask)
    return RWAState(
        self.present.expand_rows(self.hidden, mask),
        self.present.expand_rows(self.numerator, mask),
        self.present.expand_rows(self.denominator, mask),
        _maybe(self.present.expand_rows, self.max_log_weight, mask, float('-inf')),
        self.first_step,
        mask)


def _maybe(fn, tensor, *args):
  if tensor is None:
    return None
  return fn(tensor, *args)


class StepRecord:
  """
  Intermediates of one forward step, kept for exactly one backward step.

  `rescale` is None for the naive variant (implicitly 1) and zero on the
  stable variant's first step.
  """

  TENSORS = (
      'x',
      'squashed_prev',
      'encoded',
      'gate',
      'z',
      'weight',
      'rescale',
      'numerator',
      'denominator',
      'hidden',
      'output',
  )

  __slots__ = TENSORS + ('present', 'consumed')

  def __init__(self, present, *tensors):
    if len(tensors) != len(self.TENSORS):
      raise InvariantViolationError(
          f'StepRecord: expected {len(self.TENSORS)} tensors, got {len(tensors)}')
    self.present = present
    self.consumed = False
    for name, tensor in zip(self.TENSORS, tensors):
      setattr(self, name, tensor)

  def tensors(self):
    return tuple(getattr(self, name) for name in self.TENSORS)

  def consume(self):
    if self.consumed:
      raise InvariantViolationError('StepRecord: already propagated through')
    self.consumed = True

  def release(self):
    for name in self.TENSORS:
      setattr(self, name, None)


def _transforms(params, hidden, x):
  """Squashed previous hidden, u(x), g(x, s) and the log-weight a(x, s)."""
  squashed_prev = torch.tanh(hidden)
  encoded = F.linear(x, params.enc_w, params.enc_b)
  gate = add_mix(x, squashed_prev, params.mask_xw, params.mask_xb,
                 params.mask_hw, params.mask_hb, activation='tanh')
  log_weight = add_mix(x, squashed_prev, params.ctx_xw, params.ctx_xb,
                       params.ctx_hw, params.ctx_hb)
  return squashed_prev, encoded, gate, log_weight


def rwa_forward(params, state, x, stable=True):
  """
  Runs one RWA timestep.

  Arguments:
    params: RWAParams.
    state: RWAState for the rows of `x`.
    x: Tensor, the input batch. Dimensions (state.num_present, input_size).
    stable: bool, selects the log-domain stabilized accumulation.

  Returns:
    output: Tensor, the squashed new hidden value.
    state: the new RWAState.
    record: StepRecord for rwa_backward.
  """
  rows = state.num_present
  input_size = params.enc_w.shape[1]
  hidden_size = params.enc_w.shape[0]
  check_rows(x, rows, 'input')
  check_width(x, input_size, 'input')
  for name in ('hidden', 'numerator', 'denominator'):
    check_rows(getattr(state, name), rows, f'state.{name}')
    check_width(getattr(state, name), hidden_size, f'state.{name}')

  squashed_prev, encoded, gate, log_weight = _transforms(params, state.hidden, x)
  z = encoded * gate

  if stable:
    if state.first_step:
      new_max = log_weight
      rescale = torch.zeros_like(log_weight)
    else:
      if state.max_log_weight is None:
        raise InvariantViolationError('stable RWA step needs max_log_weight')
      check_rows(state.max_log_weight, rows, 'state.max_log_weight')
      check_width(state.max_log_weight, hidden_size, 'state.max_log_weight')
      new_max = torch.maximum(log_weight, state.max_log_weight)
      rescale = torch.exp(state.max_log_weight - new_max)
    weight = torch.exp(log_weight - new_max)
    numerator = state.numerator * rescale + z * weight
    denominator = state.denominator * rescale + weight
  else:
    new_max = None
    rescale = None
    weight = torch.exp(log_weight)
    numerator = state.numerator + z * weight
    denominator = state.denominator + weight

  hidden = numerator * torch.reciprocal(denominator)
  output = torch.tanh(hidden)

  new_state = RWAState(hidden, numerator, denominator, new_max, False, state.present)
  record = StepRecord(
      state.present, x, squashed_prev, encoded, gate, z, weight, rescale,
      numerator, denominator, hidden, output)
  return output, new_state, record


def rwa_backward(params, record, grad_output, grad_state=None):
  """
  Propagates gradients through one RWA timestep.

  Consumes and releases `record`; calling this twice with the same record
  raises InvariantViolationError.

  Arguments:
    params: RWAParams used for the forward step.
    record: StepRecord produced by rwa_forward.
    grad_output: Tensor, gradient of the step's output, or None for zeros.
    grad_state: RWAState, gradient of the step's new state, or None if this
      was the last step.

  Returns:
    grad_x: Tensor, gradient of the input.
    grad_state: RWAState, gradient of the previous state.
    grad_params: RWAParams of gradients (`init` is None; see
      RWA.propagate_start).
  """
  record.consume()
  try:
    output = record.output
    if grad_output is None:
      grad_output = torch.zeros_like(output)
    elif grad_output.shape != output.shape:
      raise ShapeMismatchError(
          f'grad_output: expected shape {tuple(output.shape)}, '
          f'got {tuple(grad_output.shape)}')
    if grad_state is None:
      d_hidden = torch.zeros_like(output)
      d_num = torch.zeros_like(output)
      d_den = torch.zeros_like(output)
    else:
      if grad_state.present != record.present:
        raise ShapeMismatchError(
            f'grad_state: mask {tuple(grad_state.present)} does not match the '
            f'step mask {tuple(record.present)}')
      for name in ('hidden', 'numerator', 'denominator'):
        if getattr(grad_state, name).shape != output.shape:
          raise ShapeMismatchError(
              f'grad_state.{name}: expected shape {tuple(output.shape)}, '
              f'got {tuple(getattr(grad_state, name).shape)}')
      d_hidden, d_num, d_den = grad_state.hidden, grad_state.numerator, grad_state.denominator

    # output = tanh(hidden), hidden = numerator / denominator
    d_hidden = d_hidden + grad_output * (1 - output * output)
    inv_den = torch.reciprocal(record.denominator)
    d_num = d_num + d_hidden * inv_den
    d_den = d_den - d_hidden * record.hidden * inv_den

    if record.rescale is None:
      d_prev_num = d_num
      d_prev_den = d_den
    else:
      d_prev_num = d_num * record.rescale
      d_prev_den = d_den * record.rescale

    d_z = d_num * record.weight
    d_log_weight = (d_num * record.z + d_den) * record.weight
    d_encoded = d_z * record.gate
    d_gate = d_z * record.encoded * (1 - record.gate * record.gate)

    x = record.x
    s = record.squashed_prev
    grad_params = RWAParams(
        None,
        d_encoded.t().mm(x), d_encoded.sum(0),
        d_gate.t().mm(x), d_gate.sum(0),
        d_gate.t().mm(s), d_gate.sum(0),
        d_log_weight.t().mm(x), d_log_weight.sum(0),
        d_log_weight.t().mm(s), d_log_weight.sum(0))

    grad_x = (d_encoded.mm(params.enc_w) +
              d_gate.mm(params.mask_xw) +
              d_log_weight.mm(params.ctx_xw))
    d_s = d_gate.mm(params.mask_hw) + d_log_weight.mm(params.ctx_hw)
    d_prev_hidden = d_s * (1 - s * s)

    prev = RWAState(d_prev_hidden, d_prev_num, d_prev_den, None, False, record.present)
    return grad_x, prev, grad_params
  finally:
    record.release()


class RWAFunction(torch.autograd.Function):
  """One RWA timestep with the hand-written backward of rwa_backward."""

  @staticmethod
  def forward(ctx, training, stable, first_step, x, hidden, numerator,
              denominator, max_log_weight, *weights):
    params = RWAParams(None, *weights)
    state = RWAState(hidden, numerator, denominator, max_log_weight, first_step,
                     PresentMask.full(x.shape[0]))
    output, new_state, record = rwa_forward(params, state, x, stable)
    if training:
      ctx.save_for_backward(*record.tensors(), *weights)
    ctx.training = training
    if stable:
      ctx.mark_non_differentiable(new_state.max_log_weight)
      return (output, new_state.hidden, new_state.numerator,
              new_state.denominator, new_state.max_log_weight)
    return output, new_state.hidden, new_state.numerator, new_state.denominator

  @staticmethod
  def backward(ctx, grad_output, grad_hidden, grad_numerator, grad_denominator,
               *unused):
    if not ctx.training:
      raise RuntimeError('RWA backward can only be called in training mode')

    saved = ctx.saved_tensors
    n = len(StepRecord.TENSORS)
    record = StepRecord(PresentMask.full(saved[0].shape[0]), *saved[:n])
    params = RWAParams(None, *saved[n:])
    grad_state = RWAState(
        _zeros_if_none(grad_hidden, record.output),
        _zeros_if_none(grad_numerator, record.output),
        _zeros_if_none(grad_denominator, record.output),
        None, False, record.present)
    grad_x, prev, grad_params = rwa_backward(params, record, grad_output, grad_state)
    return (None, None, None, grad_x, prev.hidden, prev.numerator,
            prev.denominator, None, *grad_params[1:])


def _zeros_if_none(grad, like):
  if grad is None:
    return torch.zeros_like(like)
  return grad


def RWAScript(stable, params, state, x):
  """Pure PyTorch RWA timestep; autograd differentiates it directly."""
  _, encoded, gate, log_weight = _transforms(params, state.hidden, x)
  z = encoded * gate

  if stable:
    if state.first_step:
      new_max = log_weight.detach()
      numerator = z * torch.exp(log_weight - new_max)
      denominator = torch.exp(log_weight - new_max)
    else:
      new_max = torch.maximum(log_weight, state.max_log_weight).detach()
      rescale = torch.exp(state.max_log_weight - new_max)
      weight = torch.exp(log_weight - new_max)
      numerator = state.numerator * rescale + z * weight
      denominator = state.denominator * rescale + weight
  else:
    new_max = None
    weight = torch.exp(log_weight)
    numerator = state.numerator + z * weight
    denominator = state.denominator + weight

  hidden = numerator / denominator
  new_state = RWAState(hidden, numerator, denominator, new_max, False, state.present)
  return torch.tanh(hidden), new_state


class StepResult:
  """
  Output of `RWA.step`: the output, the new state and the backward closure.

  The result owns the step's StepRecord; `propagate` may be called once.
  """

  def __init__(self, params, output, state, record):
    self._params = params
    self._record = record
    self.output = output
    self.state = state

  def propagate(self, grad_output, grad_state=None, grad=None):
    """
    Back-propagates through the step.

    Arguments:
      grad_output: Tensor, gradient of `self.output`.
      grad_state: (optional) RWAState, gradient of `self.state`.
      grad: (optional) dict mapping parameters to gradient tensors. Parameter
        gradients are added into it; if None they are added to `param.grad`.

    Returns:
      grad_x: Tensor, gradient of the step's input.
      grad_state: RWAState, gradient of the state the step started from.
    """
    with torch.no_grad():
      grad_x, prev, grad_params = rwa_backward(
          self._params, self._record, grad_output, grad_state)
      _accumulate(grad, self._params, grad_params)
    return grad_x, prev


def _accumulate(grad, params, grads):
  for param, g in zip(params, grads):
    if g is None:
      continue
    if grad is None:
      if param.grad is None:
        param.grad = g.detach().clone()
      else:
        param.grad.add_(g)
    elif param in grad:
      grad[param] = grad[param] + g
    else:
      grad[param] = g


class RWA(BaseRNN):
  """
  Recurrent Weighted Average layer.

  The layer can be driven two ways:

    * As an nn.Module: `forward` runs a whole `[T, B, input_size]` batch and
      autograd calls the hand-written backward of RWAFunction.
    * As a block: `start`, `step`, `propagate_start` with explicit states and
      step records, as used by `rwa_pytorch.seq.map_sequence`.
  """

  SERIALIZER_TYPE = 'rwa_pytorch.RWA'

  def __init__(self,
      input_size,
      hidden_size,
      stable=True,
      batch_first=False):
    """
    Initialize the parameters of the RWA layer.

    Arguments:
      input_size: int, the feature dimension of the input.
      hidden_size: int, the feature dimension of the hidden state and output.
      stable: (optional) bool, if `True` (default), accumulate weights relative
        to the running maximum log-weight so that large log-weights do not
        overflow.
      batch_first: (optional) bool, if `True`, then the input and output
        tensors are provided as `(batch, seq, feature)`.

    Variables:
      init: the unsquashed initial hidden value. Dimensions (hidden_size).
      encoder: nn.Linear(input_size, hidden_size), u(x) in the paper.
      masker: AddMixer with tanh output, g(x, h) in the paper.
      context: AddMixer with no activation, a(x, h) in the paper.
    """
    super().__init__(input_size, hidden_size, batch_first)
    self.stable = stable

    # Registration order fixes parameters() order.
    self.init = nn.Parameter(torch.empty(hidden_size))
    self.encoder = nn.Linear(input_size, hidden_size)
    self.masker = AddMixer(input_size, hidden_size, hidden_size, activation='tanh')
    self.context = AddMixer(input_size, hidden_size, hidden_size)
    self.reset_parameters()
    logger.debug('built %s', self)

  def reset_parameters(self):
    """Resets this layer's parameters to their initial values."""
    nn.init.zeros_(self.init)
    nn.init.xavier_uniform_(self.encoder.weight)
    nn.init.zeros_(self.encoder.bias)
    self.masker.reset_parameters()
    self.context.reset_parameters()

  def params(self):
    return RWAParams(
        self.init,
        self.encoder.weight, self.encoder.bias,
        self.masker.in1.weight, self.masker.in1.bias,
        self.masker.in2.weight, self.masker.in2.bias,
        self.context.in1.weight, self.context.in1.bias,
        self.context.in2.weight, self.context.in2.bias)

  def start(self, n):
    """Initial state for `n` sequences: `init` repeated, zero accumulators."""
    hidden = self.init.unsqueeze(0).repeat(n, 1)
    zeros = self.init.new_zeros(n, self.hidden_size)
    max_log_weight = None
    if self.stable:
      max_log_weight = self.init.new_full((n, self.hidden_size), float('-inf'))
    return RWAState(hidden, zeros, zeros, max_log_weight, True, PresentMask.full(n))

  def step(self, state, x):
    params = self.params()
    with torch.no_grad():
      output, new_state, record = rwa_forward(params, state, x, self.stable)
    return StepResult(params, output, new_state, record)

  def propagate_start(self, state_grad, grad=None):
    if state_grad.hidden.shape[1] != self.hidden_size:
      raise ShapeMismatchError(
          f'start gradient has width {state_grad.hidden.shape[1]}, '
          f'expected {self.hidden_size}')
    with torch.no_grad():
      _accumulate(grad, (self.init,), (state_grad.hidden.sum(0),))

  def forward(self, input, state=None, lengths=None):
    """
    Runs a forward pass of the RWA layer.

    Arguments:
      input: Tensor, a batch of input sequences to pass through the RWA.
        Dimensions (seq_len, batch_size, input_size) if `batch_first` is
        `False`, otherwise (batch_size, seq_len, input_size).
      state: (optional) RWAState, the initial state. Defaults to `start`.
      lengths: (optional) Tensor, list of sequence lengths for each batch
        element. Dimension (batch_size).

    Returns:
      output: Tensor, the output of the RWA layer. Dimensions
        (seq_len, batch_size, hidden_size) if `batch_first` is `False`
        (default) or (batch_size, seq_len, hidden_size) if `batch_first` is
        `True`. Steps past the end of a sequence are zero.
      h_n: the output for the last item of each sequence. Dimensions
        (1, batch_size, hidden_size).
    """
    input = self._permute(input)
    time_steps, batch_size = input.shape[0], input.shape[1]
    if input.shape[2] != self.input_size:
      raise ShapeMismatchError(
          f'RWA: expected input_size {self.input_size}, got {input.shape[2]}')
    if lengths is not None:
      lengths = torch.as_tensor(lengths, dtype=torch.long, device=input.device)
      if lengths.shape != (batch_size,):
        raise ShapeMismatchError('RWA: lengths must have one entry per sequence')
      if bool((lengths < 1).any()) or bool((lengths > time_steps).any()):
        raise ValueError('RWA: lengths must be in [1, seq_len]')
    if state is None:
      state = self.start(batch_size)
    elif len(state.present) != batch_size:
      raise ShapeMismatchError(
          f'RWA: state is for {len(state.present)} sequences, input has {batch_size}')

    full = PresentMask.full(batch_size)
    length_list = None if lengths is None else lengths.tolist()
    outputs = []
    for t in range(time_steps):
      mask = full if lengths is None else PresentMask.from_lengths(length_list, t)
      if mask != state.present:
        state = state.reduce(mask)
      x = input[t]
      if mask != full:
        x = full.reduce_rows(x, mask)
      y, state = self._impl(state, x)
      outputs.append(mask.expand_rows(y, full))

    output = torch.stack(outputs)
    h_n = self._get_final_state(output, lengths)
    return self._permute(output), h_n

  def _impl(self, state, x):
    params = self.params()
    if not self.training:
      return RWAScript(self.stable, params, state, x)

    max_log_weight = state.max_log_weight if self.stable else None
    outs = RWAFunction.apply(
        self.training,
        self.stable,
        state.first_step,
        x.contiguous(),
        state.hidden,
        state.numerator,
        state.denominator,
        max_log_weight,
        *params[1:])
    new_max = outs[4] if self.stable else None
    return outs[0], RWAState(outs[1], outs[2], outs[3], new_max, False, state.present)

  def serializer_type(self):
    return self.SERIALIZER_TYPE

  def config(self):
    return {
        'input_size': self.input_size,
        'hidden_size': self.hidden_size,
        'stable': self.stable,
        'batch_first': self.batch_first,
    }

  def extra_repr(self):
    return (f'input_size={self.input_size}, hidden_size={self.hidden_size}, '
            f'stable={self.stable}')
