import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from joblib import Parallel, delayed
from tqdm import tqdm
from typing import List, Tuple

from .exceptions import UnsupportedConfigurationError
from .objective import PosteriorProblem
from .prior_model import PriorModel
from .results import EstimationResult
from .diffeqs import SolvedModel
from .utils import RandomSource, as_random_source, debug_print, params_table, scatter_eta


@dataclass
class McmcControl:
    """
    Settings of the Metropolis-Hastings sampler.

    Args:
        n_kernel (Tuple[int, int, int]): sub-iterations of the independence,
            block random-walk and multivariate block kernels per iteration.
        stepsize_rw (float): adaptation rate of the random-walk step sizes.
        proba_mcmc (float): target acceptance probability.
        nb_max (int): largest block of the random-walk kernel.
        rw_init (float): initial step sizes, as a fraction of the prior
            variances.
    """
    n_kernel: Tuple[int, int, int] = (2, 2, 2)
    stepsize_rw: float = 0.4
    proba_mcmc: float = 0.3
    nb_max: int = 3
    rw_init: float = 0.5

    def __post_init__(self, ):
        n_kernel = tuple(self.n_kernel)
        if len(n_kernel) != 3 or any(int(k) != k or k < 0 for k in n_kernel):
            raise ValueError("n_kernel must hold three non-negative integers")
        self.n_kernel = tuple(int(k) for k in n_kernel)
        if not 0 < self.proba_mcmc < 1:
            raise ValueError("proba_mcmc must be in (0, 1)")
        if self.stepsize_rw < 0:
            raise ValueError("stepsize_rw must be >= 0")
        if int(self.nb_max) != self.nb_max or self.nb_max < 1:
            raise ValueError("nb_max must be an integer >= 1")
        if self.rw_init <= 0:
            raise ValueError("rw_init must be > 0")


@dataclass
class SamplerState:
    """State of one chain, threaded through the kernels."""
    eta: np.ndarray
    u_y: float
    u_eta: float
    step_size: np.ndarray
    accepted: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.int64))
    proposed: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.int64))


def _u_eta(problem: PosteriorProblem, eta) -> float:
    return 0.5 * problem.prior_term(eta)


def _u_y(problem: PosteriorProblem, eta) -> float:
    return 0.5 * problem.data_term(eta)


def _accept(deltu: float, rs: RandomSource) -> bool:
    return bool(deltu < -np.log(rs.uniform()))


def _adapt_step_size(state: SamplerState, nbc2, nt2, control: McmcControl):
    visited = nt2 > 0
    rate = np.divide(nbc2, nt2, out=np.zeros_like(state.step_size), where=visited)
    factor = np.where(visited, 1 + control.stepsize_rw * (rate - control.proba_mcmc), 1.0)
    state.step_size = state.step_size * factor


def independence_kernel(state: SamplerState, problem: PosteriorProblem, chol_omega,
                        n_sub: int, rs: RandomSource) -> SamplerState:
    """Proposals drawn from the prior, accepted on the likelihood ratio."""
    for _ in range(n_sub):
        etac = chol_omega @ rs.normal(len(state.eta))
        uc_y = _u_y(problem, etac)
        state.proposed[0] += 1
        if _accept(uc_y - state.u_y, rs):
            state.eta = etac
            state.u_y = uc_y
            state.accepted[0] += 1
    state.u_eta = _u_eta(problem, state.eta)
    return state


def block_random_walk_kernel(state: SamplerState, problem: PosteriorProblem, control: McmcControl,
                             rs: RandomSource) -> Tuple[SamplerState, float]:
    """
    Random-walk moves of random blocks of 1..nb_max effects, accepted on the
    posterior ratio. The step size of each effect is then adapted toward the
    target acceptance probability.

    Returns the state and the acceptance rate of the pass.
    """
    n = len(state.eta)
    nb_max = min(n, control.nb_max)
    nbc2 = np.zeros(n, dtype=np.float64)
    nt2 = np.zeros(n, dtype=np.float64)
    state.u_eta = _u_eta(problem, state.eta)
    n_acc, n_prop = 0, 0
    for _ in range(control.n_kernel[1]):
        for nrs2 in range(1, nb_max + 1):
            for j in range(n):
                jr = rs.subset(n, nrs2)
                vk2 = (jr - jr[0] + j) % n
                etac = state.eta.copy()
                etac[vk2] = state.eta[vk2] + rs.normal(nrs2) * state.step_size[vk2]
                uc_y = _u_y(problem, etac)
                uc_eta = _u_eta(problem, etac)
                deltu = uc_y - state.u_y + uc_eta - state.u_eta
                n_prop += 1
                if _accept(deltu, rs):
                    state.eta = etac
                    state.u_y = uc_y
                    state.u_eta = uc_eta
                    nbc2[vk2] += 1
                    n_acc += 1
                nt2[vk2] += 1
    state.accepted[1] += n_acc
    state.proposed[1] += n_prop
    _adapt_step_size(state, nbc2, nt2, control)
    return state, (n_acc / n_prop if n_prop > 0 else np.nan)


def multivariate_block_kernel(state: SamplerState, problem: PosteriorProblem, control: McmcControl,
                              k_iter: int, rs: RandomSource) -> SamplerState:
    """
    Simultaneous moves of structured subsets of effects. The subset size
    cycles over the iterations, from 2 effects to all of them.
    """
    n = len(state.eta)
    nbc2 = np.zeros(n, dtype=np.float64)
    nt2 = np.zeros(n, dtype=np.float64)
    state.u_eta = _u_eta(problem, state.eta)
    nrs2 = k_iter % (n - 1) + 2 if n > 1 else 1
    for _ in range(control.n_kernel[2]):
        if nrs2 < n:
            vk = np.concatenate([[0], rs.subset(n - 1, nrs2 - 1) + 1])
            nb_iter2 = n
        else:
            vk = np.arange(n)
            nb_iter2 = 1
        for k2 in range(nb_iter2):
            vk2 = (k2 + vk) % n
            etac = state.eta.copy()
            etac[vk2] = state.eta[vk2] + rs.normal(nrs2) * state.step_size[vk2]
            uc_y = _u_y(problem, etac)
            uc_eta = _u_eta(problem, etac)
            deltu = uc_y - state.u_y + uc_eta - state.u_eta
            state.proposed[2] += 1
            if _accept(deltu, rs):
                state.eta = etac
                state.u_y = uc_y
                state.u_eta = uc_eta
                nbc2[vk2] += 1
                state.accepted[2] += 1
            nt2[vk2] += 1
    _adapt_step_size(state, nbc2, nt2, control)
    return state


def run_chain(problem: PosteriorProblem,
              burn_in: int,
              n_iter: int,
              control: McmcControl,
              rs: RandomSource,
              chain: int = 0,
              progress: bool = False,
              ):
    """
    One Metropolis-Hastings chain started at eta = 0.

    Returns:
        (np.ndarray, dict): the reduced ETA after every iteration, shape
            (burn_in + n_iter, n_effects), and the statistics of the chain.
    """
    n = problem.dim
    chol_omega = np.linalg.cholesky(problem.omega)
    eta = np.zeros(n, dtype=np.float64)
    state = SamplerState(eta=eta,
                         u_y=_u_y(problem, eta),
                         u_eta=_u_eta(problem, eta),
                         step_size=np.diag(problem.omega) * control.rw_init)
    n_total = burn_in + n_iter
    eta_mat = np.zeros((n_total, n), dtype=np.float64)
    rw_trace = np.full(n_total, np.nan)
    for k_iter in tqdm(range(1, n_total + 1), desc=f"chain {chain}", disable=not progress):
        if control.n_kernel[0] > 0:
            state = independence_kernel(state, problem, chol_omega, control.n_kernel[0], rs)
        if control.n_kernel[1] > 0:
            state, rw_trace[k_iter - 1] = block_random_walk_kernel(state, problem, control, rs)
        if control.n_kernel[2] > 0:
            state = multivariate_block_kernel(state, problem, control, k_iter, rs)
        eta_mat[k_iter - 1, :] = state.eta
    with np.errstate(invalid="ignore", divide="ignore"):
        acceptance = state.accepted / state.proposed
    stats = {
        "chain": chain,
        "acceptance": dict(zip(["independence", "block_random_walk", "multivariate_block"], acceptance)),
        "random_walk_trace": rw_trace,
        "step_size": state.step_size.copy(),
    }
    return eta_mat, stats


def estim_mcmc(dat: pd.DataFrame,
               prior_model: PriorModel,
               return_model: bool = True,
               burn_in: int = 50,
               n_iter: int = 1000,
               n_chains: int = 4,
               nocb: bool = False,
               control: McmcControl = None,
               random_state=None,
               n_jobs: int = 1,
               progress: bool = False,
               verbose: bool = False,
               ) -> EstimationResult:
    """
    Posterior distribution of the random effects by Markov Chain Monte Carlo
    (Metropolis-Hastings, three kernels with adaptive random-walk steps).

    Args:
        dat (pd.DataFrame): event record of one individual.
        prior_model (PriorModel): population model, without IOV.
        return_model (bool): resolve the structural model for every draw.
        burn_in (int): iterations discarded at the start of every chain.
        n_iter (int): iterations kept per chain.
        n_chains (int): independent chains, each with its own random stream.
        nocb (bool): next observation carried backward for covariates.
        control (McmcControl): kernel settings.
        random_state: seed, `numpy.random.Generator` or `RandomSource`.
        n_jobs (int): joblib workers running the chains.
        progress (bool): tqdm progress bar per chain.
        verbose (bool): print the acceptance of every chain.

    Returns:
        EstimationResult: `eta` holds n_chains * n_iter draws (chain after
            chain), `diagnostics["chains"]` the statistics of every chain.
    """
    if prior_model.has_iov:
        raise UnsupportedConfigurationError(
            "IOV is not supported by the MCMC sampler, estim_sir() can be used instead to "
            "estimate the posterior distribution"
        )
    if burn_in < 0 or n_iter < 1 or n_chains < 1:
        raise ValueError("burn_in must be >= 0, n_iter and n_chains >= 1")
    control = McmcControl() if control is None else control
    problem = PosteriorProblem(dat, prior_model, nocb=nocb)
    streams = as_random_source(random_state).spawn(n_chains)

    chains = Parallel(n_jobs=n_jobs)(
        delayed(run_chain)(problem, burn_in, n_iter, control, streams[c], c, progress)
        for c in range(n_chains)
    )
    kept: List[np.ndarray] = []
    for eta_mat, stats in chains:
        debug_print(f"chain {stats['chain']}: acceptance {stats['acceptance']}", verbose)
        kept.append(eta_mat[burn_in:, :])
    eta = scatter_eta(np.concatenate(kept, axis=0), problem.ind_eta, len(problem.eta_names))
    eta_df = pd.DataFrame(eta, columns=problem.eta_names)

    model = None
    if return_model:
        covariates = problem.covariates_first_row if len(prior_model.covariates) > 0 else None
        params = params_table(prior_model.theta, eta_df, covariates, prior_model.kappa_names)
        model = SolvedModel(prior_model.structural_model, params, problem.data,
                            theta_names=prior_model.theta_names,
                            interpolation=problem.interpolation)
    return EstimationResult(eta=eta_df,
                            model=model,
                            event=problem.data if return_model else None,
                            diagnostics={"chains": [stats for _, stats in chains]},
                            method="mcmc")
