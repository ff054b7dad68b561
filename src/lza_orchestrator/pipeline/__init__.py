"""Stage ordering, deployment planning and the prepare construct chain."""
