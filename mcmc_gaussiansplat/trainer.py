"""
Training loop orchestration.

One training thread runs render -> loss -> backward -> optimizer step ->
strategy post-step as a tight synchronous sequence. Cancellation is
cooperative and only checked between iterations, so a stop request never
leaves the model half-mutated.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import torch
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table
from torchmetrics.functional.image import peak_signal_noise_ratio

from .config import TrainingConfig
from .errors import CheckpointError, DatasetEntryError, DatasetError, RasterizerError, TrainingError
from .gs_types import GS_LR_Schedulers
from .logger import GaussianSplattingLogger
from .losses import LossTerms, training_loss
from .metrics import Evaluator
from .model import GaussianModel
from .rendering import GsplatRasterizer, Rasterizer, render_or_raise
from .strategy import GROWTH_SCHEDULES, GROWTH_SELECTORS, MCMCStrategy, RefineRecord
from .utils import CameraSampler, create_metrics_table, format_phase_description

logger = logging.getLogger("mcmc_gs.train")


def setup_logger(verbosity: int, output_dir: Optional[Path] = None) -> logging.Logger:
    """Setup logging with RichHandler.

    Handlers are installed on the package root logger ``mcmc_gs`` so every
    module logger (``mcmc_gs.model``, ``mcmc_gs.strategy``, ...) shares them.

    Args:
        verbosity: 0=QUIET, 1=NORMAL, 2=VERBOSE, 3=DEBUG
        output_dir: Directory to save the log file (no file log if None)

    Returns:
        Configured logger instance
    """
    level_map = {
        0: logging.WARNING,   # QUIET: only warnings and errors
        1: logging.INFO,      # NORMAL: info and above
        2: logging.DEBUG,     # VERBOSE: debug and above
        3: logging.DEBUG,     # DEBUG: everything
    }
    log_level = level_map.get(verbosity, logging.INFO)

    root = logging.getLogger("mcmc_gs")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        rich_tracebacks=True,
        markup=True,
        show_time=True,
        show_path=verbosity >= 3,  # Show file path only in DEBUG mode
    )
    console_handler.setLevel(log_level)
    root.addHandler(console_handler)

    if output_dir is not None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(output_dir / "training.log", mode='a')
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root.addHandler(file_handler)

    return logger


@dataclass
class TrainingResult:
    iterations_completed: int
    num_splats: int
    cancelled: bool
    final_loss: float
    checkpoint_path: Optional[Path] = None
    ply_path: Optional[Path] = None
    eval_metrics: Dict[int, Dict[str, float]] = field(default_factory=dict)


class Trainer:
    """
    Drives the optimization of a GaussianModel under the MCMC strategy.

    The trainer owns the session state (iteration counter, loss history,
    random generators, cancellation flag); the strategy owns the model.
    """

    def __init__(
        self,
        config: TrainingConfig,
        dataset,
        eval_dataset=None,
        model: Optional[GaussianModel] = None,
        rasterizer: Optional[Rasterizer] = None,
        tb_logger: Optional[GaussianSplattingLogger] = None,
        viewer=None,
        console: Optional[Console] = None,
    ):
        """
        Args:
            config: Validated training configuration
            dataset: Training views, items are (Camera, image [H, W, 3])
            eval_dataset: Optional held-out views for evaluation
            model: Seed model (default: initialized from dataset.init_points)
            rasterizer: Differentiable renderer (default: gsplat)
            tb_logger: TensorBoard logger (default: disabled)
            viewer: Optional live viewer (see viewer.TrainingViewer)
            console: Rich console for progress and summaries
        """
        if len(dataset) == 0:
            raise DatasetError("Training dataset is empty")

        self.config = config
        self.dataset = dataset
        self.eval_dataset = eval_dataset
        self.device = torch.device(config.device)
        self.rasterizer = rasterizer or GsplatRasterizer()
        self.tb_logger = tb_logger or GaussianSplattingLogger(log_dir="", enabled=False)
        self.viewer = viewer
        self.console = console or Console()
        self.output_dir = Path(config.output_dir)
        self.checkpoint_dir = self.output_dir / "checkpoints"

        # Explicit, seeded randomness: one generator on the model device for
        # the strategy and one on the CPU for camera order.
        self.generator = torch.Generator(device=self.device).manual_seed(config.seed)
        self.sampler_generator = torch.Generator().manual_seed(config.seed)

        self.start_iteration = 0
        self.iteration = 0
        self.loss_history: List[float] = []
        self.eval_history: Dict[int, Dict[str, float]] = {}
        self._stop_event = threading.Event()
        self._running = False

        resume_state = None
        if model is None and config.resume_from:
            model, resume_state = GaussianModel.load_checkpoint(config.resume_from, device=self.device)
        elif model is None:
            model = GaussianModel.from_point_cloud(
                dataset.init_points.to(self.device),
                dataset.init_colors.to(self.device),
                sh_degree=config.sh_degree,
                init_opacity=config.init_opacity,
                init_scale=config.init_scale,
            )
        model = model.to(self.device)

        self.scene_scale = float(getattr(dataset, "scene_scale", 1.0))
        self.optimizers = model.create_optimizers(
            lr_means=config.lr_means,
            lr_scales=config.lr_scales,
            lr_quats=config.lr_quats,
            lr_opacities=config.lr_opacities,
            lr_sh=config.lr_sh,
            scene_scale=self.scene_scale,
        )
        self.schedulers = GS_LR_Schedulers.create_schedulers(
            self.optimizers, total_steps=config.iterations, final_ratio=config.lr_means_final_ratio
        )

        if config.growth_schedule == "multiplicative":
            schedule = GROWTH_SCHEDULES["multiplicative"](config.grow_factor)
        else:
            schedule = GROWTH_SCHEDULES[config.growth_schedule]()
        self.strategy = MCMCStrategy(
            model,
            cap_max=config.max_splats,
            min_opacity=config.min_opacity,
            noise_lr=config.noise_lr,
            refine_start_iter=config.refine_start_iter,
            refine_stop_iter=config.refine_stop_iter,
            refine_every=config.refine_every,
            noise_stop_iter=config.noise_stop_iter,
            growth_schedule=schedule,
            growth_selector=GROWTH_SELECTORS[config.growth_selector],
            generator=self.generator,
            verbose=config.verbosity >= 2,
        )
        self.strategy.initialize_state()

        self.sampler = CameraSampler(len(dataset), generator=self.sampler_generator)
        self.background = torch.tensor(config.background, dtype=torch.float32, device=self.device)
        self.evaluator = None
        if eval_dataset is not None and len(eval_dataset) > 0:
            self.evaluator = Evaluator(self.device, use_lpips=config.eval_lpips)

        if resume_state is not None:
            self._restore(resume_state)

    @property
    def model(self) -> GaussianModel:
        return self.strategy.model

    # --- Cancellation ---

    def request_stop(self):
        """Ask the loop to stop at the next iteration boundary."""
        self._stop_event.set()

    def is_running(self) -> bool:
        return self._running

    # --- Persistence ---

    def _training_state(self) -> dict:
        return {
            "optimizers": self.optimizers.state_dict(),
            "schedulers": {"means": self.schedulers.means.state_dict()},
            "generator": self.generator.get_state(),
            "sampler_generator": self.sampler_generator.get_state(),
            "sampler": self.sampler.state_dict(),
            "loss_history": list(self.loss_history),
            "config": self.config.to_dict(),
        }

    def _restore(self, checkpoint: dict):
        """Restore session state from a checkpoint written by `save_checkpoint`."""
        try:
            self.optimizers.load_state_dict(checkpoint["optimizers"])
            self.schedulers.means.load_state_dict(checkpoint["schedulers"]["means"])
            self.generator.set_state(checkpoint["generator"].cpu())
            self.sampler_generator.set_state(checkpoint["sampler_generator"].cpu())
            self.sampler.load_state_dict(checkpoint["sampler"])
        except (KeyError, ValueError, RuntimeError) as e:
            raise CheckpointError(f"Checkpoint does not hold a resumable training state: {e}") from e
        self.loss_history = list(checkpoint.get("loss_history", []))
        self.start_iteration = int(checkpoint["iteration"])
        self.iteration = self.start_iteration
        logger.info(f"[green]↻ Resuming from iteration {self.start_iteration:,}[/green]")

    def save_checkpoint(self, name: Optional[str] = None) -> Path:
        """
        Save model, optimizer and RNG state at the current iteration.

        Returns:
            Path of the written checkpoint
        """
        path = self.checkpoint_dir / (name or f"checkpoint_{self.iteration}.pt")
        self.model.save_checkpoint(path, iteration=self.iteration, **self._training_state())
        logger.info(f"[green]💾 Checkpoint saved:[/green] [dim]{path.name}[/dim]")
        return path

    # --- Training ---

    def _next_sample(self):
        """Next (camera, image), excluding cameras whose image cannot be read."""
        while True:
            try:
                idx = self.sampler.next()
            except StopIteration:
                raise DatasetError("Every training camera has been excluded; nothing left to train on") from None
            try:
                cam, image = self.dataset[idx]
            except DatasetEntryError as e:
                logger.warning(f"[yellow]⚠ Excluding camera {idx}:[/yellow] {e}")
                self.sampler.exclude(idx)
                continue
            return cam, image.to(self.device)

    def train_step(self, iteration: int):
        """
        Run one iteration.

        Returns:
            (loss terms, render output, ground truth image, refine record or None)
        """
        model = self.model
        cfg = self.config
        cam, gt_image = self._next_sample()

        try:
            out = render_or_raise(
                self.rasterizer, cam, model, self.background, antialiasing=cfg.antialiasing
            )
        except TrainingError:
            raise
        except RuntimeError as e:
            raise RasterizerError(f"Rasterizer failed at iteration {iteration}: {e}") from e

        self.strategy.step_pre_backward(out.info)
        terms = training_loss(
            out.image, gt_image, model,
            lambda_dssim=cfg.lambda_dssim,
            opacity_reg=cfg.opacity_reg,
            scale_reg=cfg.scale_reg,
        )
        if not torch.isfinite(terms.total):
            raise TrainingError(f"Non-finite loss at iteration {iteration} (camera '{cam.image_name}')")
        terms.total.backward()

        self.optimizers.step()
        lr = self.optimizers.means.param_groups[0]["lr"]
        record = self.strategy.step_post_backward(iteration, out.info, lr=lr)
        self.optimizers.zero_grad()
        self.schedulers.step()
        return terms, out, gt_image, record

    def evaluate(self, step: int) -> Dict[str, float]:
        """Render the held-out views and log quality metrics."""
        if self.evaluator is None:
            return {}
        image_dir = self.output_dir / "renders" / f"step_{step}" if self.config.save_eval_images else None
        metrics = self.evaluator.evaluate(
            self.model, self.eval_dataset, self.rasterizer, self.background,
            antialiasing=self.config.antialiasing, image_dir=image_dir,
        )
        self.eval_history[step] = metrics
        self.tb_logger.log_quality_metrics(metrics, step, prefix="Eval")
        if self.config.verbosity >= 1:
            self.console.print(create_metrics_table(metrics, title=f"Evaluation @ {step:,}"))
        return metrics

    def _log_step(self, i: int, terms: LossTerms, out, gt_image, record: Optional[RefineRecord]):
        cfg = self.config
        if record is not None:
            self.tb_logger.log_refine_event(record, step=i)
            if cfg.verbosity >= 1 and record.n_after != record.n_before:
                logger.info(f"[dim]Gaussians: {record.n_after:,} (relocated {record.n_relocated:,})[/dim]")
        if i % cfg.log_interval == 0:
            self.tb_logger.log_losses(terms, step=i)
            self.tb_logger.log_model_stats(self.model, step=i, min_opacity=cfg.min_opacity, cap_max=cfg.max_splats)
            self.tb_logger.log_learning_rates(self.optimizers, step=i)
            self.tb_logger.log_system_metrics(step=i)
        if i % cfg.tensorboard_image_interval == 0:
            self.tb_logger.log_images(out.image.detach(), gt_image, alpha=out.alpha.detach(), step=i)
        if i > 0 and i % cfg.tensorboard_histogram_interval == 0:
            self.tb_logger.log_gaussian_histograms(self.model, step=i)

    def _print_init_panel(self):
        init_info = Table.grid(padding=(0, 2))
        init_info.add_column(style="cyan", justify="right")
        init_info.add_column(style="green")
        init_info.add_row("Initial Gaussians:", f"{self.model.size():,}")
        init_info.add_row("Budget:", f"{self.config.max_splats:,}")
        init_info.add_row("Scene Scale:", f"{self.scene_scale:.3f}")
        init_info.add_row("Training Images:", f"{len(self.dataset)}")
        init_info.add_row("Iterations:", f"{self.start_iteration:,} → {self.config.iterations:,}")
        init_info.add_row("Growth:", f"{self.config.growth_schedule} / {self.config.growth_selector}")
        init_info.add_row("Device:", str(self.device))
        self.console.print(Panel(
            init_info,
            title="[bold blue]🚀 Model Initialized[/bold blue]",
            border_style="blue",
            box=box.ROUNDED,
        ))

    def train(self, cancel_event: Optional[threading.Event] = None) -> TrainingResult:
        """
        Run the loop until `config.iterations` or until cancelled.

        Args:
            cancel_event: External cancellation signal, checked before each iteration

        Returns:
            TrainingResult; `cancelled` is True when stopped early

        Raises:
            TrainingError: Rasterizer failure, non-finite loss or all splats dead
            DatasetError: No training camera is usable any more
        """
        if cancel_event is not None:
            self._stop_event = cancel_event
        cfg = self.config
        verbose = cfg.verbosity >= 1
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

        if verbose:
            self._print_init_panel()

        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=self.console,
            expand=False,
            disable=not verbose,
        )
        task = progress.add_task("[cyan]Training...", total=cfg.iterations, completed=self.start_iteration)

        cancelled = False
        current_loss = float("nan")
        self._running = True
        progress.start()
        try:
            for i in range(self.start_iteration, cfg.iterations):
                if self._stop_event.is_set():
                    cancelled = True
                    break
                if self.viewer is not None:
                    self.viewer.wait_if_paused(self._stop_event)
                tic = time.perf_counter()

                if i > 0 and i % cfg.sh_degree_interval == 0:
                    self.model.increment_sh_degree()

                terms, out, gt_image, record = self.train_step(i)
                self.iteration = i + 1
                current_loss = terms.total.item()
                self.loss_history.append(current_loss)
                self._log_step(i, terms, out, gt_image, record)

                if self.viewer is not None:
                    self.viewer.update(i, out.image.shape[0] * out.image.shape[1], time.perf_counter() - tic)

                if verbose:
                    with torch.no_grad():
                        psnr = peak_signal_noise_ratio(out.image.detach().clamp(0, 1), gt_image, data_range=1.0)
                    phase = "Refine" if self.strategy.refine_start_iter <= i < self.strategy.refine_stop_iter else "Optimize"
                    desc = format_phase_description(
                        phase, current_loss, terms.l1.item(), terms.ssim.item(), psnr.item(), self.model.size()
                    )
                    progress.update(task, advance=1, description=desc)

                if self.iteration in cfg.save_steps:
                    self.save_checkpoint()
                if self.iteration in cfg.eval_steps:
                    self.evaluate(self.iteration)
        finally:
            progress.stop()
            self._running = False

        if cancelled:
            logger.warning(f"[yellow]⏹ Training cancelled at iteration {self.iteration:,}[/yellow]")
            checkpoint_path = self.save_checkpoint()
        else:
            checkpoint_path = self.save_checkpoint("checkpoint_final.pt")

        ply_path = None
        if cfg.export_ply:
            ply_path = self.output_dir / "point_cloud.ply"
            self.model.save_ply(ply_path)

        if self.viewer is not None:
            self.viewer.complete()

        self.tb_logger.log_hyperparameters(cfg.to_dict(), {
            'final/loss': current_loss,
            'final/gaussians': self.model.size(),
        })

        if verbose:
            summary_grid = Table.grid(padding=(0, 2))
            summary_grid.add_column(style="cyan", justify="right")
            summary_grid.add_column(style="green")
            summary_grid.add_row("Iterations:", f"{self.iteration:,}")
            summary_grid.add_row("Final Loss:", f"{current_loss:.6f}")
            summary_grid.add_row("Final Gaussians:", f"{self.model.size():,}")
            summary_grid.add_row("Refine Steps:", f"{len(self.strategy.history):,}")
            summary_grid.add_row("Checkpoint:", str(checkpoint_path.name))
            title = "[bold yellow]⏹ Training Stopped[/bold yellow]" if cancelled \
                else "[bold green]✅ Training Complete![/bold green]"
            self.console.print(Panel(summary_grid, title=title, border_style="green", box=box.ROUNDED))

        return TrainingResult(
            iterations_completed=self.iteration,
            num_splats=self.model.size(),
            cancelled=cancelled,
            final_loss=current_loss,
            checkpoint_path=checkpoint_path,
            ply_path=ply_path,
            eval_metrics=dict(self.eval_history),
        )
