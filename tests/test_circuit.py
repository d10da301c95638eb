"""
Tests for the full single-step Circuit.

Covers the end-to-end scenario, weighting invariants, agreement with an
independent torch.autograd rendition of the same math, and chaining two
steps through the previous-weighting and previous-memory references.
"""

import math

import pytest
import torch

from ntm_memory.config import DTYPE, WEIGHTING_TOLERANCE
from ntm_memory.model.circuit import Circuit, stack_head_weights
from ntm_memory.model.content_addressing import DegenerateSimilarityError
from ntm_memory.model.head import Head, head_unit_size
from ntm_memory.nn.units import Units, uniform_weighting
from ntm_memory.training.gradcheck import check_gradients


def _random_flat(m, seed):
    generator = torch.Generator().manual_seed(seed)
    return Units(torch.randn(head_unit_size(m), generator=generator, dtype=DTYPE))


def _random_weighting(n, seed):
    generator = torch.Generator().manual_seed(seed)
    return Units(torch.softmax(torch.randn(n, generator=generator, dtype=DTYPE), dim=0))


def _randn(*shape, seed=0):
    generator = torch.Generator().manual_seed(seed)
    return Units(torch.randn(*shape, generator=generator, dtype=DTYPE))


def _circuit_outputs(circuit):
    return [r.top for r in circuit.reads] + [circuit.memory]


def _reference_step(flats, wtm1s, memory, m):
    """
    The same step written with differentiable torch ops.

    Returns:
        (reads, new_memory, leaf tensors in the order flats..., wtm1s..., memory)
    """
    flat_leaves = [f.value.clone().requires_grad_(True) for f in flats]
    wtm1_leaves = [w.value.clone().requires_grad_(True) for w in wtm1s]
    mem = memory.value.clone().requires_grad_(True)
    n = mem.shape[0]

    reads, ws, erases, adds = [], [], [], []
    for flat, wtm1 in zip(flat_leaves, wtm1_leaves):
        k = flat[:m]
        beta, g, s, gamma = flat[m], flat[m + 1], flat[m + 2], flat[m + 3]
        erase = torch.sigmoid(flat[m + 4:2 * m + 4])
        add = torch.sigmoid(flat[2 * m + 4:])

        cos = (mem @ k) / (mem.norm(dim=1) * k.norm())
        wc = torch.softmax(beta * beta * cos, dim=0)
        gt = torch.sigmoid(g)
        wg = gt * wc + (1 - gt) * wtm1

        z = torch.fmod(torch.fmod(s, n) + n, n)
        offset = int(z.item())
        simj = 1 - (z - torch.floor(z))
        sw = torch.roll(wg, -offset) * simj + torch.roll(wg, -(offset + 1)) * (1 - simj)

        pows = (sw / sw.max()) ** (gamma * gamma + 1)
        w = pows / pows.sum()

        reads.append(w @ mem)
        ws.append(w)
        erases.append(erase)
        adds.append(add)

    erasure = torch.ones_like(mem)
    added = torch.zeros_like(mem)
    for w, e, a in zip(ws, erases, adds):
        erasure = erasure * (1 - torch.outer(w, e))
        added = added + torch.outer(w, a)
    new_memory = erasure * mem + added

    return reads, new_memory, flat_leaves + wtm1_leaves + [mem]


class TestEndToEnd:
    """The 3 x 2 single-head scenario."""

    def _build(self):
        memory = Units.from_values([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        head = Head(
            k=Units.from_values([1.0, 0.0]),
            beta=Units.scalar(1.0),
            g=Units.scalar(10.0),
            s=Units.scalar(0.0),
            gamma=Units.scalar(1.0),
            # Logits: sigmoid(-50) ~ 0 erase, sigmoid(50) == 1 add
            erase=Units.from_values([-50.0, -50.0]),
            add=Units.from_values([50.0, 50.0]),
            wtm1=uniform_weighting(3),
        )
        return Circuit([head], memory), memory

    def test_weightings(self):
        circuit, _ = self._build()

        cos = torch.tensor([1.0, 0.0, 1 / math.sqrt(2)], dtype=DTYPE)
        wc = torch.softmax(cos, dim=0)
        gt = 1 / (1 + math.exp(-10.0))
        wg = gt * wc + (1 - gt) / 3
        w = wg ** 2 / (wg ** 2).sum()

        assert torch.allclose(circuit.content[0].top.value, wc)
        assert torch.allclose(circuit.gated[0].top.value, wg)
        assert torch.allclose(circuit.shifted[0].top.value, wg)
        assert torch.allclose(circuit.weightings()[0], w)
        assert torch.argmax(w).item() == 0

    def test_read_is_weighted_sum(self):
        circuit, memory = self._build()
        w = circuit.weightings()[0]
        assert circuit.read_values().shape == (1, 2)
        assert torch.allclose(circuit.read_values()[0], w @ memory.value)

    def test_write_adds_weighting(self):
        circuit, memory = self._build()
        w = circuit.weightings()[0]
        expected = memory.value + torch.outer(w, torch.ones(2, dtype=DTYPE))
        assert torch.allclose(circuit.written_memory_values(), expected)

    def test_accessors_are_copies(self):
        circuit, _ = self._build()
        values = circuit.written_memory_values()
        values.fill_(0.0)
        assert not torch.all(circuit.memory.value == 0)


class TestCircuitInvariants:
    """Distribution invariants at every stage of every head."""

    def test_all_stage_outputs_are_distributions(self):
        n, m = 7, 4
        heads = [
            Head.from_units(_random_flat(m, seed), m, _random_weighting(n, seed + 100))
            for seed in range(3)
        ]
        circuit = Circuit(heads, _randn(n, m, seed=5))
        for stages in (circuit.content, circuit.gated, circuit.shifted, circuit.refocus):
            for stage in stages:
                w = stage.top.value
                assert w.sum().item() == pytest.approx(1.0, abs=WEIGHTING_TOLERANCE.sum_atol)
                assert torch.all(w >= 0)

    def test_zero_memory_row_is_fatal(self):
        memory = Units.from_values([[1.0, 0.0], [0.0, 0.0]])
        head = Head.from_units(_random_flat(2, 0), 2, uniform_weighting(2))
        with pytest.raises(DegenerateSimilarityError):
            Circuit([head], memory)

    def test_width_mismatch(self):
        head = Head.from_units(_random_flat(3, 0), 3, uniform_weighting(4))
        with pytest.raises(ValueError):
            Circuit([head], _randn(4, 2))

    def test_previous_weighting_length_mismatch(self):
        head = Head.from_units(_random_flat(2, 0), 2, uniform_weighting(3))
        with pytest.raises(ValueError):
            Circuit([head], _randn(4, 2))

    def test_no_heads(self):
        with pytest.raises(ValueError):
            Circuit([], _randn(4, 2))


class TestCircuitGradients:
    """Backward through the whole step."""

    def test_matches_autograd_reference(self):
        n, m = 6, 3
        flats = [_random_flat(m, 10), _random_flat(m, 11)]
        wtm1s = [_random_weighting(n, 12), _random_weighting(n, 13)]
        memory = _randn(n, m, seed=14)

        heads = [Head.from_units(f, m, w) for f, w in zip(flats, wtm1s)]
        circuit = Circuit(heads, memory)

        generator = torch.Generator().manual_seed(15)
        up_reads = [torch.randn(m, generator=generator, dtype=DTYPE) for _ in heads]
        up_memory = torch.randn(n, m, generator=generator, dtype=DTYPE)
        for r, up in zip(circuit.reads, up_reads):
            r.top.grad.copy_(up)
        circuit.memory.grad.copy_(up_memory)
        circuit.backward()

        reads, new_memory, leaves = _reference_step(flats, wtm1s, memory, m)
        loss = sum((r * up).sum() for r, up in zip(reads, up_reads)) + (new_memory * up_memory).sum()
        loss.backward()

        for r, ref in zip(circuit.reads, reads):
            assert torch.allclose(r.top.value, ref.detach())
        assert torch.allclose(circuit.memory.value, new_memory.detach())

        ours = [f.grad for f in flats] + [w.grad for w in wtm1s] + [memory.grad]
        for got, leaf in zip(ours, leaves):
            assert torch.allclose(got, leaf.grad, atol=1e-10, rtol=1e-7)

    def test_gradient_check(self):
        n, m = 4, 3
        flats = [_random_flat(m, 20), _random_flat(m, 21)]
        wtm1s = [_random_weighting(n, 22), _random_weighting(n, 23)]
        memory = _randn(n, m, seed=24)

        def forward():
            heads = [Head.from_units(f, m, w) for f, w in zip(flats, wtm1s)]
            return Circuit(heads, memory)

        inputs = {"memory": memory}
        for i, (f, w) in enumerate(zip(flats, wtm1s)):
            inputs[f"head{i}"] = f
            inputs[f"wtm1_{i}"] = w

        result = check_gradients(forward, inputs, outputs_fn=_circuit_outputs)
        assert result.passed, result.failures

    def test_two_steps_chain(self):
        """Step 2's backward feeds step 1's final weighting and new memory."""
        n, m = 5, 3
        memory0 = _randn(n, m, seed=30)
        flat1 = _random_flat(m, 31)
        flat2 = _random_flat(m, 32)
        wtm1 = uniform_weighting(n)

        step1 = Circuit([Head.from_units(flat1, m, wtm1)], memory0)
        step2 = Circuit([Head.from_units(flat2, m, step1.refocus[0].top)], step1.memory)

        step2.reads[0].top.grad.fill_(1.0)
        step2.backward()
        assert torch.any(step1.refocus[0].top.grad != 0)
        assert torch.any(step1.memory.grad != 0)

        step1.backward()
        assert torch.any(flat1.grad != 0)
        assert torch.any(memory0.grad != 0)
        assert torch.any(wtm1.grad != 0)

        heads_over_time = stack_head_weights([step1, step2])
        assert heads_over_time.shape == (2, n)
        assert torch.allclose(heads_over_time[1], step2.weightings()[0])

    def test_flat_controller_output_receives_gradients(self):
        """Head fields are views, so gradients land in the flat vector."""
        n, m = 4, 2
        flat = _random_flat(m, 40)
        circuit = Circuit([Head.from_units(flat, m, uniform_weighting(n))], _randn(n, m, seed=41))
        circuit.reads[0].top.grad.fill_(1.0)
        circuit.memory.grad.fill_(1.0)
        circuit.backward()
        assert torch.all(flat.grad != 0)

    def test_zero_grad_between_cycles(self):
        """Clearing every gradient makes a repeated step give identical gradients."""
        n, m = 5, 3
        flats = [_random_flat(m, 50), _random_flat(m, 51)]
        wtm1s = [_random_weighting(n, 52), _random_weighting(n, 53)]
        memory = _randn(n, m, seed=54)

        generator = torch.Generator().manual_seed(55)
        up_reads = [torch.randn(m, generator=generator, dtype=DTYPE) for _ in flats]
        up_memory = torch.randn(n, m, generator=generator, dtype=DTYPE)

        def cycle():
            heads = [Head.from_units(f, m, w) for f, w in zip(flats, wtm1s)]
            circuit = Circuit(heads, memory)
            for r, up in zip(circuit.reads, up_reads):
                r.top.grad.copy_(up)
            circuit.memory.grad.copy_(up_memory)
            circuit.backward()
            grads = [f.grad.clone() for f in flats] + [w.grad.clone() for w in wtm1s]
            return heads, grads + [memory.grad.clone()]

        heads, first = cycle()
        for head in heads:
            head.zero_grad()
            head.wtm1.zero_grad()
        memory.zero_grad()
        assert all(torch.all(f.grad == 0) for f in flats)

        _, second = cycle()
        for a, b in zip(first, second):
            assert torch.any(a != 0)
            assert torch.equal(a, b)


class TestHeadSummaries:
    """Effective control values reported for debugging."""

    def test_transforms(self):
        n, m = 8, 2
        flat = Units.from_values([1.0, 0.0, -2.0, 0.0, -3.0, 0.5, 0.0, 0.0, 0.0, 0.0])
        circuit = Circuit([Head.from_units(flat, m, uniform_weighting(n))], _randn(n, m, seed=50))
        summary = circuit.head_summaries()[0]
        assert summary["beta"] == pytest.approx(4.0)
        assert summary["g"] == pytest.approx(0.5)
        assert summary["shift"] == pytest.approx(5.0)
        assert summary["gamma"] == pytest.approx(1.25)
        assert summary["erase"] == pytest.approx([0.5, 0.5])

    def test_stack_requires_circuits(self):
        with pytest.raises(ValueError):
            stack_head_weights([])
