"""HTTP surface for OpsPulse."""
