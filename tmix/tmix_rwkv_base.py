import torch
from torch import Tensor

from rwkv4.state import TimeMixState, pp_sentinel
from configs import Model_Config

def get_default_state(x:Tensor, config:Model_Config, requires_grad:bool):
    C = config.d_model
    return TimeMixState(
        shift_state=torch.zeros([C], dtype=x.dtype, device=x.device, requires_grad=requires_grad),
        aa=torch.zeros([C], dtype=x.dtype, device=x.device, requires_grad=requires_grad),
        bb=torch.zeros([C], dtype=x.dtype, device=x.device, requires_grad=requires_grad),
        pp=torch.full([C], pp_sentinel(x.dtype), dtype=x.dtype, device=x.device, requires_grad=requires_grad),
    )
