"""Trade taxonomy."""

from cmmcalc.taxonomy.tree import CategoryTaxonomy, load_taxonomy

__all__ = ["CategoryTaxonomy", "load_taxonomy"]
