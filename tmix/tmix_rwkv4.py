import math
import torch
from torch import nn, Tensor

from rwkv4.state import ModelState, TimeMixState
from configs import Model_Config
from .tmix_rwkv_base import get_default_state

def wkv_output(k:Tensor, v:Tensor, aa:Tensor, bb:Tensor, pp:Tensor, time_first:Tensor):
    """
    Weighted average of all past values (aa / bb, scaled by exp(pp)) and the current value,
    the current one weighted by exp(time_first + k).
    Both exponents are shifted by their max so neither can overflow; e2 > 0 keeps the denominator positive.
    """
    ww = time_first + k
    p = torch.maximum(pp, ww)
    e1 = torch.exp(pp - p)
    e2 = torch.exp(ww - p)
    return (e1 * aa + e2 * v) / (e1 * bb + e2)

def wkv_update(k:Tensor, v:Tensor, aa:Tensor, bb:Tensor, pp:Tensor, time_decay:Tensor):
    """
    Decays the accumulators by exp(time_decay) and adds the current value with weight exp(k).
    Returns the next (aa, bb, pp).
    """
    ww = pp + time_decay
    p = torch.maximum(ww, k)
    e1 = torch.exp(ww - p)
    e2 = torch.exp(k - p)
    return e1 * aa + e2 * v, e1 * bb + e2, p

class TMix_rwkv4(nn.Module):
    def get_default_state_factory(self): return get_default_state

    def __init__(self, args:Model_Config, layer_id):
        super().__init__()
        self.args = args
        self.layer_id = layer_id

        with torch.no_grad():
            ratio_0_to_1 = layer_id / max(args.num_layers - 1, 1)  # 0 to 1
            ratio_1_to_almost0 = 1.0 - (layer_id / args.num_layers)  # 1 to ~0
            ddd = torch.ones(args.d_model)
            for i in range(args.d_model):
                ddd[i] = i / args.d_model

            # fancy time_decay, stored as the log-decay added to pp at every step (always negative)
            decay_speed = torch.ones(args.d_model)
            for n in range(args.d_model):
                decay_speed[n] = -5 + 8 * (n / max(args.d_model - 1, 1)) ** (0.7 + 1.3 * ratio_0_to_1)
            self.time_decay = nn.Parameter(-torch.exp(decay_speed))

            # fancy time_first
            zigzag = torch.tensor([(i + 1) % 3 - 1 for i in range(args.d_model)]) * 0.5
            self.time_first = nn.Parameter(torch.ones(args.d_model) * math.log(0.3) + zigzag)

            # fancy time_mix
            self.time_mix_k = nn.Parameter(torch.pow(ddd, ratio_1_to_almost0))
            self.time_mix_v = nn.Parameter(torch.pow(ddd, ratio_1_to_almost0) + 0.3 * ratio_0_to_1)
            self.time_mix_r = nn.Parameter(torch.pow(ddd, 0.5 * ratio_1_to_almost0))

        self.key = nn.Linear(args.d_model, args.d_model, bias=False)
        self.value = nn.Linear(args.d_model, args.d_model, bias=False)
        self.receptance = nn.Linear(args.d_model, args.d_model, bias=False)
        self.output = nn.Linear(args.d_model, args.d_model, bias=False)

    def forward(self, x:Tensor, last_model_state:ModelState):
        if x.dim() == 1:
            return self.forward_single(x, last_model_state)
        return self.forward_sequence(x, last_model_state)

    def mix_with_previous(self, x:Tensor, xx:Tensor):
        # works on a single position [C] and on a whole sequence [T, C]
        xk = x * self.time_mix_k + xx * (1 - self.time_mix_k)
        xv = x * self.time_mix_v + xx * (1 - self.time_mix_v)
        xr = x * self.time_mix_r + xx * (1 - self.time_mix_r)

        r = torch.sigmoid(self.receptance(xr))
        k = self.key(xk)
        v = self.value(xv)
        return r, k, v

    def forward_single(self, x:Tensor, last_model_state:ModelState):
        last_state = last_model_state.block_states[self.layer_id].time_mix_state
        r, k, v = self.mix_with_previous(x, last_state.shift_state)

        # the output only sees history before this step, the carried state already includes it
        wkv = wkv_output(k, v, last_state.aa, last_state.bb, last_state.pp, self.time_first)
        aa, bb, pp = wkv_update(k, v, last_state.aa, last_state.bb, last_state.pp, self.time_decay)

        y = self.output(r * wkv)
        return y, TimeMixState(shift_state=x.clone(), aa=aa, bb=bb, pp=pp)

    def forward_sequence(self, x:Tensor, last_model_state:ModelState):
        last_state = last_model_state.block_states[self.layer_id].time_mix_state
        T, C = x.size()

        shift_state = x[-1].clone()
        xx = torch.concat((last_state.shift_state.unsqueeze(0), x[:-1]), dim=0)
        r, k, v = self.mix_with_previous(x, xx)

        # serial scan, step t+1 reads the accumulators written by step t
        aa, bb, pp = last_state.aa, last_state.bb, last_state.pp
        wkv = []
        for t in range(T):
            wkv.append(wkv_output(k[t], v[t], aa, bb, pp, self.time_first))
            aa, bb, pp = wkv_update(k[t], v[t], aa, bb, pp, self.time_decay)
        wkv = torch.stack(wkv, dim=0)

        y = self.output(r * wkv)
        return y, TimeMixState(shift_state=shift_state, aa=aa, bb=bb, pp=pp)
