########################################################################################################
# Compares recurrent (token by token) and sequence-mode inference of an RWKV-4 model
#
# python check_recurrence.py --path=RWKV-4-Pile-169M.pth --length=64
# python check_recurrence.py --model.d_model=64 --model.num_layers=4 --model.rescale_layer=2
########################################################################################################

import sys, logging
import typing
from dataclasses import dataclass

import numpy as np
import torch
import lightning as pl

from configs import parse_cmdline_configs, Model_Config

logging.basicConfig(level=logging.INFO)

@dataclass(kw_only=True)
class CLI_Config:
    path: str | None = None
    length: int = 32
    precision: int | str = '32'
    rescale_layer: int = 6
    seed: int = 42
    state_out: str | None = None
    model: typing.Any = None

if __name__ == "__main__":
    from rwkv4.logger import rank_zero_info, print0 as print
    from rwkv4.model import RWKV
    from rwkv4.checkpoint import load_model

    np.set_printoptions(precision=4, suppress=True, linewidth=200)

    config, errors = parse_cmdline_configs([a for a in sys.argv[1:] if not a.startswith('--model.')], CLI_Config)
    if errors != '':
        print(errors)
        exit(1)
    model_args = [a for a in sys.argv[1:] if a.startswith('--model.')]
    if config.path is None:
        config.model, errors = parse_cmdline_configs([a.replace('--model.', '--', 1) for a in model_args], Model_Config)
        if errors != '':
            print(errors)
            exit(1)

    match config.precision:
        case 32 | '32':
            dtype = torch.float32
        case 64 | '64':
            dtype = torch.float64
        case 16 | '16':
            dtype = torch.float16
        case 'bf16':
            dtype = torch.bfloat16
        case _:
            print("Bad precision type specified")
            exit(1)

    pl.seed_everything(config.seed)

    if config.path is not None:
        model = load_model(config.path, rescale_layer=config.rescale_layer, dtype=dtype)
    else:
        model = RWKV(config.model).to(dtype=dtype)
    model.eval()
    model_config:Model_Config = model.config

    x = torch.randn(config.length, model_config.d_model, dtype=dtype)

    with torch.no_grad():
        seq_out, seq_state = model.forward_sequence(x, None)

        state = None
        step_out = []
        for t in range(config.length):
            out, state = model.forward_step(x[t], state)
            step_out.append(out)
        step_out = torch.stack(step_out, dim=0)

    diff = (seq_out - step_out).abs().max(dim=-1).values
    rank_zero_info(f"max |sequence - recurrent| per position:\n{diff.cpu().numpy()}")
    for layer_id, (a, b) in enumerate(zip(seq_state.block_states, state.block_states)):
        d = max(
            (a.time_mix_state.aa - b.time_mix_state.aa).abs().max().item(),
            (a.time_mix_state.bb - b.time_mix_state.bb).abs().max().item(),
            (a.time_mix_state.pp - b.time_mix_state.pp).abs().max().item(),
        )
        rank_zero_info(f"layer {layer_id} max |wkv state difference| = {d:.3e}")

    if config.state_out is not None:
        seq_state.save(config.state_out)
        rank_zero_info(f"saved state after {seq_state.seq_pos} tokens to {config.state_out}")

    # half precision rounds the batched and per-token matmuls differently
    tol = max(1e-4, 16 * torch.finfo(dtype).eps)
    ok = torch.allclose(seq_out, step_out, rtol=tol, atol=tol)
    print("OK" if ok else "MISMATCH")
    exit(0 if ok else 2)
