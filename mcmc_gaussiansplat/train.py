"""
Command line driver.

    mcmc-gs-train --colmap-path sparse/0 --images-path images --output-dir out
    mcmc-gs-train --mode view --ply-path out/point_cloud.ply
    mcmc-gs-train --mode render --ply-path out/point_cloud.ply --cameras-json cams.json --output-dir frames

Exit status: 0 on success (including a cancelled run), 1 on any
configuration, data, IO or training error, 2 on invalid arguments.
"""
import argparse
import dataclasses
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

import torch
from rich import box
from rich.console import Console
from rich.table import Table

from .config import TrainingConfig
from .dataset import ColmapDataset
from .errors import SplatError
from .logger import GaussianSplattingLogger
from .model import GaussianModel
from .render_json import render_from_json
from .strategy import GROWTH_SCHEDULES, GROWTH_SELECTORS
from .trainer import Trainer, TrainingResult, setup_logger
from .viewer import TrainingViewer, serve_forever

logger = logging.getLogger("mcmc_gs.train")


def build_parser(defaults: Optional[TrainingConfig] = None) -> argparse.ArgumentParser:
    """Argument parser whose defaults mirror `defaults` (or TrainingConfig())."""
    d = defaults or TrainingConfig()
    parser = argparse.ArgumentParser(
        description='Train a Gaussian Splatting model with MCMC density control',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('--mode', choices=['train', 'view', 'render'], default='train',
                        help='train a model, serve a PLY in the viewer, or render a PLY from JSON cameras')
    parser.add_argument('--config', type=str, default=None,
                        help='JSON config (e.g. a previous cfg.json); flags override its values')
    parser.add_argument('--ply-path', type=str, default=None, help='PLY to show (view mode) or render (render mode)')
    parser.add_argument('--cameras-json', type=str, default=None,
                        help='Camera JSON (object or array) to render in render mode')

    data = parser.add_argument_group('data')
    data.add_argument('--colmap-path', type=str, default=d.colmap_path,
                      help='Path to COLMAP sparse reconstruction directory (e.g., sparse/0)')
    data.add_argument('--images-path', type=str, default=d.images_path, help='Path to training images directory')
    data.add_argument('--output-dir', type=str, default=d.output_dir,
                      help='Output directory for checkpoints and results')
    data.add_argument('--downscale', type=int, default=d.downscale, help='Image downscale factor')
    data.add_argument('--test-every', type=int, default=d.test_every,
                      help='Hold out every N-th image for evaluation (0 disables)')
    data.add_argument('--preload-images', action=argparse.BooleanOptionalAction, default=d.preload_images,
                      help='Load all images into memory before training')

    run = parser.add_argument_group('run')
    run.add_argument('--iterations', type=int, default=d.iterations, help='Total number of training iterations')
    run.add_argument('--seed', type=int, default=d.seed, help='Random seed')
    run.add_argument('--device', type=str, default=d.device, help='Torch device')
    run.add_argument('--resume-from', type=str, default=d.resume_from, help='Checkpoint to resume from')
    run.add_argument('--sh-degree', type=int, default=d.sh_degree, choices=[0, 1, 2, 3],
                     help='Degree of spherical harmonics')
    run.add_argument('--sh-degree-interval', type=int, default=d.sh_degree_interval,
                     help='Raise the active SH degree every N iterations')
    run.add_argument('--init-opacity', type=float, default=d.init_opacity, help='Initial opacity')
    run.add_argument('--init-scale', type=float, default=d.init_scale,
                     help='Initial scale as a multiple of the nearest-neighbour distance')

    lr = parser.add_argument_group('learning rates')
    lr.add_argument('--lr-means', type=float, default=d.lr_means,
                    help='Base learning rate for positions (multiplied by the scene scale)')
    lr.add_argument('--lr-means-final-ratio', type=float, default=d.lr_means_final_ratio,
                    help='Final position learning rate as a fraction of the initial one')
    lr.add_argument('--lr-scales', type=float, default=d.lr_scales, help='Learning rate for scales')
    lr.add_argument('--lr-quats', type=float, default=d.lr_quats, help='Learning rate for rotations')
    lr.add_argument('--lr-opacities', type=float, default=d.lr_opacities, help='Learning rate for opacities')
    lr.add_argument('--lr-sh', type=float, default=d.lr_sh, help='Learning rate for spherical harmonics')

    loss = parser.add_argument_group('loss')
    loss.add_argument('--lambda-dssim', type=float, default=d.lambda_dssim, help='Weight of the D-SSIM term')
    loss.add_argument('--opacity-reg', type=float, default=d.opacity_reg, help='Opacity regularization weight')
    loss.add_argument('--scale-reg', type=float, default=d.scale_reg, help='Scale regularization weight')

    mcmc = parser.add_argument_group('MCMC strategy')
    mcmc.add_argument('--max-splats', type=int, default=d.max_splats, help='Maximum number of splats')
    mcmc.add_argument('--min-opacity', type=float, default=d.min_opacity,
                      help='Splats at or below this opacity are relocated')
    mcmc.add_argument('--refine-every', type=int, default=d.refine_every, help='Refine every N iterations')
    mcmc.add_argument('--refine-start-iter', type=int, default=d.refine_start_iter,
                      help='Start refining at this iteration')
    mcmc.add_argument('--refine-stop-iter', type=int, default=d.refine_stop_iter,
                      help='Stop refining at this iteration')
    mcmc.add_argument('--noise-lr', type=float, default=d.noise_lr, help='Position noise scale')
    mcmc.add_argument('--noise-stop-iter', type=int, default=d.noise_stop_iter,
                      help='Stop noise injection at this iteration (default: never)')
    mcmc.add_argument('--growth-schedule', choices=sorted(GROWTH_SCHEDULES), default=d.growth_schedule,
                      help='How many splats to add per refine step')
    mcmc.add_argument('--grow-factor', type=float, default=d.grow_factor,
                      help='Growth factor of the multiplicative schedule')
    mcmc.add_argument('--growth-selector', choices=sorted(GROWTH_SELECTORS), default=d.growth_selector,
                      help='Which splats are split when growing')

    render = parser.add_argument_group('rendering')
    render.add_argument('--background', type=float, nargs=3, default=list(d.background),
                        metavar=('R', 'G', 'B'), help='Background color')
    render.add_argument('--antialiasing', action=argparse.BooleanOptionalAction, default=d.antialiasing,
                        help='Use antialiased rasterization')

    cadence = parser.add_argument_group('checkpoints and evaluation')
    cadence.add_argument('--save-steps', type=int, nargs='*', default=list(d.save_steps),
                         help='Save a checkpoint after these iterations')
    cadence.add_argument('--eval-steps', type=int, nargs='*', default=list(d.eval_steps),
                         help='Evaluate held-out views after these iterations')
    cadence.add_argument('--log-interval', type=int, default=d.log_interval, help='Log metrics every N iterations')
    cadence.add_argument('--eval-lpips', action=argparse.BooleanOptionalAction, default=d.eval_lpips,
                         help='Also compute LPIPS during evaluation')
    cadence.add_argument('--save-eval-images', action=argparse.BooleanOptionalAction, default=d.save_eval_images,
                         help='Write evaluation renders as PNG')
    cadence.add_argument('--export-ply', action=argparse.BooleanOptionalAction, default=d.export_ply,
                         help='Export the final model to PLY')

    log = parser.add_argument_group('logging')
    log.add_argument('--verbosity', type=int, default=d.verbosity, choices=[0, 1, 2, 3],
                     help='Verbosity level: 0=QUIET, 1=NORMAL, 2=VERBOSE, 3=DEBUG')
    log.add_argument('--tensorboard', dest='enable_tensorboard', action=argparse.BooleanOptionalAction,
                     default=d.enable_tensorboard, help='TensorBoard logging')
    log.add_argument('--tb-image-interval', dest='tensorboard_image_interval', type=int,
                     default=d.tensorboard_image_interval, help='Log images to TensorBoard every N iterations')
    log.add_argument('--tb-histogram-interval', dest='tensorboard_histogram_interval', type=int,
                     default=d.tensorboard_histogram_interval, help='Log histograms to TensorBoard every N iterations')

    viewer = parser.add_argument_group('viewer')
    viewer.add_argument('--headless', action=argparse.BooleanOptionalAction, default=d.headless,
                        help='Train without the interactive viewer')
    viewer.add_argument('--viewer-port', type=int, default=d.viewer_port, help='Port for the viewer server')
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse arguments; values from --config become the defaults that flags override."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument('--config', type=str, default=None)
    known, _ = pre.parse_known_args(argv)
    defaults = TrainingConfig.from_json(known.config) if known.config else None
    return build_parser(defaults).parse_args(argv)


def config_from_args(args: argparse.Namespace) -> TrainingConfig:
    names = {f.name for f in dataclasses.fields(TrainingConfig)}
    values = {k: v for k, v in vars(args).items() if k in names}
    values['background'] = tuple(values['background'])
    return TrainingConfig(**values)


def print_config(console: Console, cfg: TrainingConfig):
    config_table = Table(title="Configuration", box=box.ROUNDED, show_header=False)
    config_table.add_column("Parameter", style="cyan", width=20)
    config_table.add_column("Value", style="yellow")
    config_table.add_row("COLMAP Path", cfg.colmap_path)
    config_table.add_row("Images Path", cfg.images_path)
    config_table.add_row("Output Directory", cfg.output_dir)
    config_table.add_row("Iterations", f"{cfg.iterations:,}")
    config_table.add_row("Splat Budget", f"{cfg.max_splats:,}")
    config_table.add_row("Refine", f"every {cfg.refine_every} in [{cfg.refine_start_iter:,}, {cfg.refine_stop_iter:,})")
    config_table.add_row("Growth", f"{cfg.growth_schedule} / {cfg.growth_selector}")
    config_table.add_row("Verbosity", ["QUIET", "NORMAL", "VERBOSE", "DEBUG"][cfg.verbosity])
    console.print(config_table)


def run_training(cfg: TrainingConfig, console: Console) -> TrainingResult:
    """Load data, build the trainer and run it (in a worker thread when the viewer is on)."""
    output_path = Path(cfg.output_dir)
    cfg.save_json(output_path / "cfg.json")

    dataset = ColmapDataset(
        cfg.colmap_path, cfg.images_path, split="train",
        test_every=cfg.test_every, downscale=cfg.downscale,
        device=cfg.device, preload=cfg.preload_images,
    )
    eval_dataset = None
    if cfg.test_every > 0 and cfg.eval_steps:
        eval_dataset = ColmapDataset(
            cfg.colmap_path, cfg.images_path, split="test",
            test_every=cfg.test_every, downscale=cfg.downscale, device=cfg.device,
        )

    tb_logger = GaussianSplattingLogger(log_dir=str(output_path / 'tensorboard'), enabled=cfg.enable_tensorboard)
    if cfg.enable_tensorboard:
        logger.info(f"[green]📊 TensorBoard:[/green] Logging to run [cyan]{tb_logger.run_name}[/cyan]")
        logger.info(f"[dim]Run: tensorboard --logdir={output_path / 'tensorboard'}[/dim]")

    cancel = threading.Event()
    with tb_logger:
        trainer = Trainer(cfg, dataset, eval_dataset=eval_dataset, tb_logger=tb_logger, console=console)
        if cfg.headless:
            previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
            try:
                return trainer.train(cancel_event=cancel)
            finally:
                signal.signal(signal.SIGINT, previous)

        trainer.viewer = TrainingViewer(
            trainer.model, port=cfg.viewer_port, rasterizer=trainer.rasterizer,
            background=trainer.background, antialiasing=cfg.antialiasing,
        )
        outcome = {}

        def worker():
            try:
                outcome["result"] = trainer.train(cancel_event=cancel)
            except BaseException as e:  # re-raised on the main thread
                outcome["error"] = e

        thread = threading.Thread(target=worker, name="mcmc-gs-trainer", daemon=True)
        thread.start()
        try:
            while thread.is_alive():
                thread.join(timeout=0.5)
        except KeyboardInterrupt:
            logger.info("[yellow]Stop requested, finishing the current iteration...[/yellow]")
            cancel.set()
            thread.join()
        if "error" in outcome:
            raise outcome["error"]
        result = outcome["result"]
        if not cancel.is_set():
            serve_forever()
        return result


def run_viewer(ply_path: Optional[str], port: int, device: str, background=None, antialiasing: bool = False):
    if not ply_path:
        raise SplatError("--ply-path is required in view mode")
    model = GaussianModel.load_ply(ply_path, device=device)
    TrainingViewer(model, port=port, mode="rendering", background=background, antialiasing=antialiasing)
    serve_forever()


def run_render(args: argparse.Namespace) -> int:
    if not args.ply_path or not args.cameras_json:
        raise SplatError("--ply-path and --cameras-json are required in render mode")
    written = render_from_json(
        args.ply_path, args.cameras_json, args.output_dir, device=args.device,
        background=torch.tensor(args.background, dtype=torch.float32), antialiasing=args.antialiasing,
    )
    logger.info(f"[green]✓ Rendered {len(written)} camera(s) to[/green] {args.output_dir}")
    return len(written)


def main(argv: Optional[List[str]] = None) -> int:
    console = Console()
    try:
        args = parse_args(argv)
        if args.mode == 'view':
            setup_logger(args.verbosity)
            run_viewer(
                args.ply_path, args.viewer_port, args.device,
                background=torch.tensor(args.background, dtype=torch.float32), antialiasing=args.antialiasing,
            )
            return 0
        if args.mode == 'render':
            setup_logger(args.verbosity)
            run_render(args)
            return 0

        cfg = config_from_args(args).validate()
        setup_logger(cfg.verbosity, Path(cfg.output_dir))
        if cfg.verbosity >= 1:
            console.rule("[bold cyan]MCMC Gaussian Splatting Training[/bold cyan]", style="cyan")
            print_config(console, cfg)
        result = run_training(cfg, console)
    except (SplatError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    if cfg.verbosity >= 1:
        final_info = Table.grid(padding=(0, 1))
        final_info.add_column(style="cyan")
        final_info.add_row(f"📁 Output: [yellow]{cfg.output_dir}[/yellow]")
        final_info.add_row(f"🎨 Checkpoint: [yellow]{result.checkpoint_path}[/yellow]")
        if result.ply_path is not None:
            final_info.add_row(f"📦 PLY: [yellow]{result.ply_path}[/yellow]")
        console.print(final_info)
    return 0


if __name__ == "__main__":
    sys.exit(main())
