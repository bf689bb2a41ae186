"""
Recover the critical window of a simulated exposure mixture with several
independent chains, and report the posterior lag effects and the
exposure-selection probabilities.
"""
import numpy as np
import pandas as pd
from bayestdlmm import run_chains, sim_dlmm


def lag_effects(dlm, n_exp, n_lags):
    '''Posterior mean effect of every (exposure, lag), summing the terminal nodes covering the lag.'''
    n_iter = dlm['iter'].nunique()
    out = np.zeros((n_exp, n_lags))
    for row in dlm.itertuples():
        out[row.exposure, row.tmin-1:row.tmax] += row.est
    return out / n_iter

seed = 34647
rng = np.random.default_rng(seed)
n_lags = 20
exposures, Z, y = sim_dlmm(1000, rng, n_exp=3, n_lags=n_lags, window=(6, 10), effect=0.1, mix_effect=0.02)

res = run_chains(4, exposures, y, Z, n_trees=20, iters=1000, burnin=1000, thinning=5, seed=seed, verbose='v')

effects = np.mean([lag_effects(r['dlm'], 3, n_lags) for r in res], axis=0)
print(pd.DataFrame(effects, index=list(exposures.keys()), columns=range(1, n_lags+1)).round(3).T)

exp_prob = np.concatenate([r['exp_prob'] for r in res])
print('Exposure selection probabilities:', exp_prob.mean(axis=0).round(3))

mix = pd.concat([r['mix'] for r in res])
names = np.array(list(exposures.keys()))
print('Interaction draws per exposure pair:')
print(mix.groupby([names[mix['exp1']], names[mix['exp2']]]).size())

sigma2 = np.array([r['sigma2'] for r in res])
print('sigma2 chain means:', sigma2.mean(axis=1).round(3))
