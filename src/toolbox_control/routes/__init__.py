"""HTTP routers for the toolbox control plane."""
