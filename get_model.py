from __future__ import annotations

import argparse
from pathlib import Path

import torch

from matting.config import RVM_FILE, RVM_STATE_CHANNELS


class RecurrentMattingWrapper(torch.nn.Module):
    """
    Fixed six-output signature for the recurrent matting model:
      (src, r1, r2, r3, r4, downsample_ratio) -> (fgr, pha, r1o, r2o, r3o, r4o)

    Zero states with a 1x1 spatial size mean "first frame": they are replaced by None
    so the model allocates states matching the frame.
    """

    def __init__(self, m: torch.nn.Module):
        super().__init__()
        self.m = m

    def forward(
        self,
        src: torch.Tensor,
        r1: torch.Tensor,
        r2: torch.Tensor,
        r3: torch.Tensor,
        r4: torch.Tensor,
        downsample_ratio: float,
    ):
        if r1.shape[2] == 1 and r1.shape[3] == 1:
            out = self.m(src, None, None, None, None, downsample_ratio)
        else:
            out = self.m(src, r1, r2, r3, r4, downsample_ratio)
        fgr, pha, r1o, r2o, r3o, r4o = out[0], out[1], out[2], out[3], out[4], out[5]
        return fgr, pha, r1o, r2o, r3o, r4o


def export_rvm_torchscript(*, out_path: Path, variant: str = "mobilenetv3", hub_repo: str = "PeterL1n/RobustVideoMatting") -> None:
    """
    Export the recurrent video matting model to TorchScript (script, not trace,
    because the first-frame branch is data dependent).

    Ground rules:
    - Script on CPU only.
    - float32 only.
    - batch size 1.
    """
    torch.set_default_dtype(torch.float32)
    core = torch.hub.load(hub_repo, variant, trust_repo=True)
    core.eval()
    for p in core.parameters():
        p.requires_grad_(False)
    core = core.to(dtype=torch.float32).to("cpu")

    wrapped = RecurrentMattingWrapper(core).eval().to("cpu")
    scripted = torch.jit.script(wrapped)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    scripted.save(str(out_path))


def smoke_test(path: Path, size: int = 256) -> None:
    model = torch.jit.load(str(path), map_location="cpu")
    src = torch.rand(1, 3, size, size)
    states = [torch.zeros(1, c, 1, 1) for c in RVM_STATE_CHANNELS]
    with torch.inference_mode():
        fgr, pha, *rec = model(src, *states, 1.0)
        fgr, pha, *rec = model(src, *rec, 1.0)
    if pha.shape[1] != 1 or [r.shape[1] for r in rec] != list(RVM_STATE_CHANNELS):
        raise RuntimeError(f"Unexpected outputs: pha={tuple(pha.shape)} states={[tuple(r.shape) for r in rec]}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Export the recurrent matting model to TorchScript (CPU, float32, batch=1).")
    parser.add_argument("--variant", default="mobilenetv3", choices=["mobilenetv3", "resnet50"])
    parser.add_argument(
        "--out",
        default=str(Path(__file__).parent / "models" / RVM_FILE),
        help="Destination TorchScript path used by the pipeline.",
    )
    args = parser.parse_args()

    out_path = Path(args.out)
    export_rvm_torchscript(out_path=out_path, variant=args.variant)
    smoke_test(out_path)
    print(f"OK. Saved TorchScript model to: {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
