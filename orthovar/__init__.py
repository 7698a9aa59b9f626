"""orthovar is a library providing functions which pull together the core SNP table of snippy-core,
    the gene presence/absence table of Roary and the Prokka annotation of each strain to produce
    the amino acid found at every mutated site in every strain.

Provides a CLI script (bin/orthovar.py) which links these functions together to produce all outputs from
an outputs folder of the assembly/annotation pipeline.
Makes the assumption that strain folders are named `<outputs folder>_<strain>`

Classes:
    * MalformedInputException
    * SchemaMismatchException
    * VariantSite
    * ProteinIndex
    * OrthologTable

Functions:
    * codon_index
    * extract_protein
    * find_strains
    * find_output_dir
    * read_variant_sites
    * load_protein_indexes
    * write_gene_sequences
    * build_matrix
    * write_matrix
    * translate_mutations
"""

import importlib.metadata

__version__ = importlib.metadata.version("orthovar")

from .orthovar_lib import (
    MATRIX_FILENAME,  # noqa: F401
    MalformedInputException,  # noqa: F401
    OrthologTable,  # noqa: F401
    ProteinIndex,  # noqa: F401
    SchemaMismatchException,  # noqa: F401
    VariantSite,  # noqa: F401
    build_matrix,  # noqa: F401
    codon_index,  # noqa: F401
    extract_protein,  # noqa: F401
    find_input,  # noqa: F401
    find_output_dir,  # noqa: F401
    find_strains,  # noqa: F401
    load_protein_indexes,  # noqa: F401
    read_variant_sites,  # noqa: F401
    translate_mutations,  # noqa: F401
    unique_genes,  # noqa: F401
    write_gene_sequences,  # noqa: F401
    write_matrix,  # noqa: F401
)
