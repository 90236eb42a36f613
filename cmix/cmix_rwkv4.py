import torch
from torch import nn, Tensor

from rwkv4.state import ModelState, ChannelMixState
from configs import Model_Config
from .cmix_rwkv_base import get_default_state

class CMix_rwkv4(nn.Module):
    def get_default_state_factory(self): return get_default_state

    def __init__(self, args:Model_Config, layer_id):
        super().__init__()
        self.args = args
        self.layer_id = layer_id

        with torch.no_grad():  # fancy init of time_mix
            ratio_1_to_almost0 = 1.0 - (layer_id / args.num_layers)  # 1 to ~0
            ddd = torch.ones(args.d_model)
            for i in range(args.d_model):
                ddd[i] = i / args.d_model
            self.time_mix_k = nn.Parameter(torch.pow(ddd, ratio_1_to_almost0))
            self.time_mix_r = nn.Parameter(torch.pow(ddd, ratio_1_to_almost0))

        dim_ffn = 4 * args.d_model
        self.key = nn.Linear(args.d_model, dim_ffn, bias=False)
        self.receptance = nn.Linear(args.d_model, args.d_model, bias=False)
        self.value = nn.Linear(dim_ffn, args.d_model, bias=False)

    def forward(self, x:Tensor, last_model_state:ModelState):
        if x.dim() == 1:
            return self.forward_single(x, last_model_state)
        return self.forward_sequence(x, last_model_state)

    def _rkv(self, x:Tensor, xx:Tensor):
        # works on a single position [C] and on a whole sequence [T, C]
        xk = x * self.time_mix_k + xx * (1 - self.time_mix_k)
        xr = x * self.time_mix_r + xx * (1 - self.time_mix_r)

        k = self.key(xk)
        k = torch.relu(k) ** 2
        kv = self.value(k)
        return torch.sigmoid(self.receptance(xr)) * kv

    def forward_single(self, x:Tensor, last_model_state:ModelState):
        last_state = last_model_state.block_states[self.layer_id].channel_mix_state
        return self._rkv(x, last_state.shift_state), ChannelMixState(shift_state=x.clone())

    def forward_sequence(self, x:Tensor, last_model_state:ModelState):
        last_state = last_model_state.block_states[self.layer_id].channel_mix_state
        shift_state = x[-1].clone()
        # token shift: position i sees position i-1, position 0 sees the carried state
        xx = torch.concat((last_state.shift_state.unsqueeze(0), x[:-1]), dim=0)
        return self._rkv(x, xx), ChannelMixState(shift_state=shift_state)
