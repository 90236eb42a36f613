import math
import unittest
import torch

from configs import Model_Config
from rwkv4.state import ModelState, BlockState, PP_SENTINEL
from tmix.tmix_rwkv4 import TMix_rwkv4, wkv_output, wkv_update
from tmix.tmix_rwkv_base import get_default_state as default_tmix_state
from cmix.cmix_rwkv_base import get_default_state as default_cmix_state


def fresh_state(x, config):
    state = ModelState()
    for _ in range(config.num_layers):
        state.block_states.append(BlockState(
            time_mix_state=default_tmix_state(x, config, False),
            channel_mix_state=default_cmix_state(x, config, False),
        ))
    return state


def unit_tmix():
    config = Model_Config(d_model=1, num_layers=1, rescale_layer=1)
    tmix = TMix_rwkv4(config, 0)
    with torch.no_grad():
        for lin in [tmix.key, tmix.value, tmix.receptance, tmix.output]:
            lin.weight.fill_(1.0)
        tmix.time_mix_k.fill_(0.5)
        tmix.time_mix_v.fill_(0.5)
        tmix.time_mix_r.fill_(0.5)
        tmix.time_decay.zero_()
        tmix.time_first.zero_()
    return config, tmix


class TestWKV(unittest.TestCase):
    def test_first_step_ignores_sentinel_history(self):
        k = torch.tensor([0.5, -3.0])
        v = torch.tensor([2.0, -1.0])
        aa = torch.zeros(2)
        bb = torch.zeros(2)
        pp = torch.full([2], PP_SENTINEL)
        wkv = wkv_output(k, v, aa, bb, pp, torch.zeros(2))
        torch.testing.assert_close(wkv, v)

    def test_constant_values_average_to_themselves(self):
        k = torch.tensor([40.0, -40.0, 0.0])
        v = torch.full([3], 3.0)
        bb = torch.tensor([1.0, 2.0, 0.5])
        aa = bb * 3.0
        pp = torch.tensor([-5.0, 60.0, 0.0])
        wkv = wkv_output(k, v, aa, bb, pp, torch.tensor([1.0, -1.0, 0.0]))
        torch.testing.assert_close(wkv, v)

    def test_update_keeps_exponents_bounded(self):
        k = torch.tensor([500.0, -500.0])
        v = torch.ones(2)
        aa, bb, pp = wkv_update(k, v, torch.zeros(2), torch.zeros(2), torch.full([2], PP_SENTINEL), torch.full([2], -0.5))
        torch.testing.assert_close(pp, k)
        torch.testing.assert_close(bb, torch.ones(2))
        torch.testing.assert_close(aa, torch.ones(2))


class TestTimeMix(unittest.TestCase):
    def test_single_unit_example(self):
        config, tmix = unit_tmix()
        x = torch.tensor([1.0])
        state = fresh_state(x, config)
        with torch.no_grad():
            y, next_state = tmix.forward_single(x, state)
        r = 1.0 / (1.0 + math.exp(-0.5))
        self.assertAlmostEqual(y.item(), r * 0.5, places=6)
        self.assertAlmostEqual(y.item(), 0.3112, places=4)
        torch.testing.assert_close(next_state.shift_state, x)
        torch.testing.assert_close(next_state.pp, torch.tensor([0.5]))
        torch.testing.assert_close(next_state.aa, torch.tensor([0.5]))
        torch.testing.assert_close(next_state.bb, torch.tensor([1.0]))

    def test_output_reads_accumulators_before_update(self):
        config, tmix = unit_tmix()
        x = torch.tensor([1.0])
        state = fresh_state(x, config)
        with torch.no_grad():
            _, tms = tmix.forward_single(x, state)
            state.block_states[0].time_mix_state = tms
            y, _ = tmix.forward_single(x, state)
        # second step: xk = 1, k = v = 1, history (aa=0.5, bb=1, pp=0.5)
        e1 = math.exp(0.5 - 1.0)
        wkv = (e1 * 0.5 + 1.0) / (e1 * 1.0 + 1.0)
        r = 1.0 / (1.0 + math.exp(-1.0))
        self.assertAlmostEqual(y.item(), r * wkv, places=6)

    def test_input_state_is_not_mutated(self):
        config = Model_Config(d_model=8, num_layers=1)
        torch.manual_seed(0)
        tmix = TMix_rwkv4(config, 0)
        x = torch.randn(5, 8)
        state = fresh_state(x, config)
        before = state.block_states[0].time_mix_state
        before = [t.clone() for t in (before.shift_state, before.aa, before.bb, before.pp)]
        with torch.no_grad():
            tmix.forward_sequence(x, state)
        after = state.block_states[0].time_mix_state
        for a, b in zip(before, (after.shift_state, after.aa, after.bb, after.pp)):
            torch.testing.assert_close(a, b)

    def test_sequence_matches_steps(self):
        config = Model_Config(d_model=16, num_layers=3)
        torch.manual_seed(1)
        tmix = TMix_rwkv4(config, 2).double()
        x = torch.randn(9, 16, dtype=torch.float64)
        state = fresh_state(x, config)
        with torch.no_grad():
            y_seq, seq_state = tmix.forward_sequence(x, state)
            ys = []
            for t in range(x.size(0)):
                y, tms = tmix.forward_single(x[t], state)
                state.block_states[2].time_mix_state = tms
                ys.append(y)
        torch.testing.assert_close(y_seq, torch.stack(ys))
        torch.testing.assert_close(seq_state.aa, tms.aa)
        torch.testing.assert_close(seq_state.bb, tms.bb)
        torch.testing.assert_close(seq_state.pp, tms.pp)
        torch.testing.assert_close(seq_state.shift_state, x[-1])

    def test_token_shift_uses_previous_token(self):
        config = Model_Config(d_model=4, num_layers=1)
        torch.manual_seed(2)
        tmix = TMix_rwkv4(config, 0)
        with torch.no_grad():
            # only the shifted input reaches r, k and v
            tmix.time_mix_k.zero_()
            tmix.time_mix_v.zero_()
            tmix.time_mix_r.zero_()
        x0, x1, x2 = torch.randn(3, 4)
        state = fresh_state(x0, config)
        with torch.no_grad():
            y_a, _ = tmix.forward_sequence(torch.stack([x0, x1]), state)
            y_b, _ = tmix.forward_sequence(torch.stack([x0, x2]), state)
            y_c, _ = tmix.forward_sequence(torch.stack([x1, x1]), state)
        torch.testing.assert_close(y_a[1], y_b[1])
        self.assertFalse(torch.allclose(y_a[1], y_c[1]))

    def test_outputs_stay_finite_for_large_keys(self):
        config = Model_Config(d_model=8, num_layers=1)
        torch.manual_seed(3)
        tmix = TMix_rwkv4(config, 0)
        with torch.no_grad():
            tmix.key.weight.mul_(50.0)
            x = torch.randn(40, 8) * 10.0
            y, tms = tmix.forward_sequence(x, fresh_state(x, config))
        self.assertTrue(torch.isfinite(y).all())
        self.assertTrue((tms.bb > 0).all())


if __name__ == '__main__':
    unittest.main()
