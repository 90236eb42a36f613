import os
import torch

def __nop(ob):
    return ob

TCompile = __nop

if os.getenv("RWKV_TORCH_COMPILE", '0').lower() in ['1', 'true']:
    TCompile = torch.compile
