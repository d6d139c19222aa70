"""dissmap: Community dissimilarity and zeta-diversity mapping.

Pairwise and higher-order dissimilarity metrics between geographic sites,
zeta diversity over site combinations, and multi-site generalised
dissimilarity models for predicting turnover across environmental space.
"""

__version__ = "0.3.0"
