"""HTTP operator surface for the pipeline."""
