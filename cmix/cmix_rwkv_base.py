import torch
from torch import Tensor

from rwkv4.state import ChannelMixState
from configs import Model_Config

def get_default_state(x:Tensor, config:Model_Config, requires_grad:bool):
    return ChannelMixState(
        shift_state=torch.zeros([config.d_model], dtype=x.dtype, device=x.device, requires_grad=requires_grad)
    )
