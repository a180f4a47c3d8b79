"""landsim: Spatially explicit population genetics on a landscape grid.

Genotype counts live on the habitable cells of a regular raster and change
through one generation step:
  - Seeding, pollen and seed dispersal via truncated spatial kernels
  - Mendelian mating through a (G, G, G) offspring tensor
  - Density-dependent germination and survival
  - Expected-value or Poisson/Binomial stochastic dynamics

The backward dual traces allele lineages through a retained history of
generation breakdowns.
"""

__version__ = "0.1.0"
