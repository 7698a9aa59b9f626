"""orthovar_lib.py is a library providing functions which pull together the core SNP table
    of a snippy-core run, the gene presence/absence table of a Roary run and the Prokka
    protein annotations of every strain, to produce per-site amino acid matrices.

Based on genesanalysis.sh
"""

import glob
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Tuple

import pandas as pd
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord
from tqdm import tqdm

# Roary writes 14 descriptive columns before the per-strain columns
ROARY_METADATA_COLUMNS = 14

# Folders within an outputs folder which do not belong to a single strain
NON_STRAIN_FOLDERS = ("GenomeContent", "allSNPs")

MATRIX_FILENAME = "SNPs_AA_allgenes.txt"


class MalformedInputException(Exception):
    """Custom exception raised when an input table or file cannot be used"""

    def __init__(self, identifier: str, reason: str):
        """Raise this exception

        Args:
            identifier (str): The offending file, row or value
            reason (str): Why it could not be used
        """
        self.message = f"{identifier}: {reason}"
        super().__init__(self.message)


class SchemaMismatchException(Exception):
    """Custom exception raised when the strains on disk do not match the columns of a table"""

    def __init__(self, strain: str, table: str):
        """Raise this exception

        Args:
            strain (str): Name of the strain without a column
            table (str): Path of the table
        """
        self.message = f"Strain: {strain} has no column in the {table} table!"
        super().__init__(self.message)


@dataclass(frozen=True)
class VariantSite:
    """A single row of the core variant table"""

    gene: str
    nt_position: int


def codon_index(nt_position: int) -> int:
    """Convert a 1-based nucleotide position within a gene into the 1-based index of its codon

    Args:
        nt_position (int): Nucleotide position, counting from 1 at the first coding base

    Raises:
        MalformedInputException: Raised if the position is not a positive integer

    Returns:
        int: Codon (amino acid) index, so positions 1-3 give 1, 4-6 give 2 etc.
    """
    if isinstance(nt_position, bool) or not isinstance(nt_position, int):
        raise MalformedInputException(str(nt_position), "nucleotide position is not an integer")
    if nt_position < 1:
        raise MalformedInputException(str(nt_position), "nucleotide positions start at 1")
    return (nt_position + 2) // 3


class ProteinIndex:
    """Protein sequences of one strain's annotation, indexed by locus id.

    Lookups try the record id, then whole words of the header, and finally (if allowed)
    the first record whose header or sequence contains the identifier. The last step is how
    the annotation has always been searched, so it stays on by default even though it can
    hit a longer locus tag.
    """

    def __init__(self, path: str, allow_substring: bool = True):
        self.path = path
        self.allow_substring = allow_substring
        self.headers: List[Tuple[str, str]] = []
        self.by_id: Dict[str, str] = {}
        self.by_token: Dict[str, str] = {}
        try:
            records = list(SeqIO.parse(path, "fasta"))
        except FileNotFoundError:
            logging.error(f"No protein annotation at {path}")
            raise MalformedInputException(path, "protein annotation file does not exist")
        except ValueError as e:
            logging.error(f"Could not parse {path}: {e}")
            raise MalformedInputException(path, f"not a FASTA file ({e})")

        for record in records:
            sequence = "".join(str(record.seq).split())
            self.headers.append((record.description, sequence))
            self.by_id.setdefault(record.id, sequence)
            for token in record.description.split():
                self.by_token.setdefault(token, sequence)
        logging.debug(f"Indexed {len(self.by_id)} proteins from {path}")

    def __len__(self) -> int:
        return len(self.by_id)

    def extract(self, identifier: str) -> str | None:
        """Get the full protein sequence for a locus id or gene name

        Args:
            identifier (str): Locus id (or gene name) to look for

        Returns:
            str | None: Single line amino acid sequence, or None if no record matches
        """
        if not identifier:
            return None
        if identifier in self.by_id:
            return self.by_id[identifier]
        if identifier in self.by_token:
            return self.by_token[identifier]
        if self.allow_substring:
            for description, sequence in self.headers:
                if identifier in description or identifier in sequence:
                    logging.debug(
                        f"{identifier} only matched part of the record '{description}' in {self.path}"
                    )
                    return sequence
        return None


def extract_protein(path: str, identifier: str, allow_substring: bool = True) -> str | None:
    """Convenience wrapper to pull a single sequence out of a protein file

    Args:
        path (str): Path to the protein FASTA
        identifier (str): Locus id or gene name
        allow_substring (bool, optional): Whether to fall back to partial header matches. Defaults to True.

    Returns:
        str | None: The sequence, or None if not found
    """
    return ProteinIndex(path, allow_substring=allow_substring).extract(identifier)


class OrthologTable:
    """Roary gene presence/absence table, giving each strain's locus id for a gene cluster"""

    def __init__(self, path: str):
        self.path = path
        try:
            table = pd.read_csv(path, dtype=str, keep_default_na=False)
        except FileNotFoundError:
            logging.error(f"No presence/absence table at {path}")
            raise MalformedInputException(path, "presence/absence table does not exist")
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            logging.error(f"Could not parse {path}: {e}")
            raise MalformedInputException(path, f"unparsable presence/absence table ({e})")

        if len(table.columns) <= ROARY_METADATA_COLUMNS:
            logging.error(f"{path} has no strain columns")
            raise MalformedInputException(
                path, f"expected more than {ROARY_METADATA_COLUMNS} columns"
            )

        self.table = table
        self.gene_column = table.columns[0]
        self.strains = list(table.columns[ROARY_METADATA_COLUMNS:])

        # Build the lookups once so each resolve is a dict access
        self.gene_rows: Dict[str, int] = {}
        self.locus_rows: Dict[str, int] = {}
        for idx, gene in enumerate(table[self.gene_column]):
            self.gene_rows.setdefault(gene.strip(), idx)
        for strain in self.strains:
            for idx, cell in enumerate(table[strain]):
                for locus in cell.split():
                    self.locus_rows.setdefault(locus, idx)

    def check_strains(self, strains) -> None:
        """Ensure every strain has a column in this table

        Args:
            strains (Iterable[str]): Strain names

        Raises:
            SchemaMismatchException: Raised for the first strain without a column
        """
        for strain in strains:
            if strain not in self.strains:
                logging.error(f"{strain} is not a column of {self.path}")
                raise SchemaMismatchException(strain, self.path)

    def extra_strains(self, strains) -> List[str]:
        """Columns of the table which are not in the given strains (e.g. an external reference)"""
        strains = set(strains)
        return [s for s in self.strains if s not in strains]

    def resolve(self, gene: str, strain: str) -> str | None:
        """Find the locus id a strain's annotation uses for a gene

        Args:
            gene (str): Gene name (or a locus id of any strain in the cluster)
            strain (str): Strain column to read

        Returns:
            str | None: The locus id, or None if the strain has no ortholog
        """
        if strain not in self.strains:
            return None
        idx = self.gene_rows.get(gene)
        if idx is None:
            idx = self.locus_rows.get(gene)
        if idx is None:
            return None
        # Paralogs are listed in the same cell, so just use the first
        loci = self.table.at[idx, strain].split()
        if len(loci) == 0:
            return None
        return loci[0]


def find_strains(outputs_folder: str) -> Dict[str, str]:
    """Get the strain folders of an outputs folder, in alphabetical order

    Args:
        outputs_folder (str): Path to the folder holding every output of the pipeline

    Returns:
        Dict[str, str]: Mapping of strain name --> strain folder
    """
    prefix = os.path.basename(os.path.normpath(outputs_folder)) + "_"
    strains: Dict[str, str] = {}
    for name in sorted(os.listdir(outputs_folder)):
        path = os.path.join(outputs_folder, name)
        if not os.path.isdir(path):
            continue
        if any(folder in name for folder in NON_STRAIN_FOLDERS):
            continue
        # Strain folders are named <outputs folder>_<strain>
        if name.startswith(prefix) and len(name) > len(prefix):
            strain = name[len(prefix):]
        else:
            strain = name
        if strain in strains:
            logging.error(f"{strains[strain]} and {path} are both strain {strain}")
            raise MalformedInputException(path, f"strain {strain} already comes from {strains[strain]}")
        strains[strain] = path
    return strains


def find_input(outputs_folder: str, pattern: str, description: str) -> str:
    """Find a single input file within the outputs folder

    Args:
        outputs_folder (str): Path to the outputs folder
        pattern (str): Glob relative to the outputs folder
        description (str): Human readable name for errors

    Raises:
        MalformedInputException: Raised if nothing matches

    Returns:
        str: Path to the first match
    """
    matches = sorted(glob.glob(os.path.join(outputs_folder, pattern)))
    if len(matches) == 0:
        logging.error(f"No {description} found matching {pattern}")
        raise MalformedInputException(outputs_folder, f"no {description} ({pattern})")
    if len(matches) > 1:
        logging.warning(f"Several {description} files found, using {matches[0]}")
    return matches[0]


VARIANT_TABLE_PATTERN = "*allSNPs*/*_SNPsCore.tab"


def find_output_dir(outputs_folder: str, output_dir: str | None = None) -> str:
    """Get the directory outputs (and the log) are written to

    Args:
        outputs_folder (str): Path to the outputs folder
        output_dir (str | None, optional): Explicit directory. Defaults to the folder holding the core variant table.

    Returns:
        str: The output directory
    """
    if output_dir is not None:
        return output_dir
    return os.path.dirname(find_input(outputs_folder, VARIANT_TABLE_PATTERN, "core variant table"))


def read_variant_sites(path: str) -> Tuple[str, List[VariantSite]]:
    """Read the core variant table into VariantSites, keeping the header line as is

    Args:
        path (str): Path to the tab separated core SNP table

    Raises:
        MalformedInputException: Raised if the table or any position cannot be used

    Returns:
        Tuple[str, List[VariantSite]]: (header line, sites in row order)
    """
    try:
        with open(path, encoding="utf-8") as f:
            header = f.readline().rstrip("\r\n")
    except FileNotFoundError:
        logging.error(f"No variant table at {path}")
        raise MalformedInputException(path, "variant table does not exist")
    except UnicodeDecodeError as e:
        logging.error(f"Could not decode {path}: {e}")
        raise MalformedInputException(path, f"variant table is not UTF-8 text ({e})")

    if len(header.split("\t")) < 2:
        logging.error(f"{path} needs a gene and a position column")
        raise MalformedInputException(path, "variant table has fewer than 2 columns")

    try:
        # Rows may carry more fields than the header (trailing tabs, untitled columns),
        # so never let pandas promote the gene column to the index
        table = pd.read_csv(
            path,
            sep="\t",
            usecols=[0, 1],
            index_col=False,
            dtype=str,
            keep_default_na=False,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError) as e:
        logging.error(f"Could not parse {path}: {e}")
        raise MalformedInputException(path, f"unparsable variant table ({e})")

    sites = []
    for row_number, (gene, position) in enumerate(
        zip(table.iloc[:, 0], table.iloc[:, 1]), start=2
    ):
        try:
            nt_position = int(position)
        except ValueError:
            logging.error(f"Row {row_number} of {path} has position {position}")
            raise MalformedInputException(
                f"{path}:{row_number}", f"position '{position}' is not an integer"
            )
        if nt_position < 1:
            logging.error(f"Row {row_number} of {path} has position {position}")
            raise MalformedInputException(
                f"{path}:{row_number}", f"position {nt_position} is before the start of {gene}"
            )
        sites.append(VariantSite(gene.strip(), nt_position))
    return header, sites


def load_protein_indexes(
    strains: Dict[str, str],
    allow_substring: bool = True,
    threads: int = 1,
    progress: bool = False,
) -> Dict[str, ProteinIndex]:
    """Index the Prokka proteins of every strain

    Args:
        strains (Dict[str, str]): Strain name --> strain folder
        allow_substring (bool, optional): Whether lookups may fall back to partial header matches. Defaults to True.
        threads (int, optional): Number of files to parse at once. Defaults to 1.
        progress (bool, optional): Whether to show a progress bar. Defaults to False.

    Returns:
        Dict[str, ProteinIndex]: Strain name --> index, in the same order as `strains`
    """
    paths = {
        strain: os.path.join(folder, "annotation", "prokka.faa")
        for strain, folder in strains.items()
    }
    indexes: Dict[str, ProteinIndex] = {}
    with ThreadPoolExecutor(max_workers=max(threads, 1)) as pool:
        futures = {
            pool.submit(ProteinIndex, path, allow_substring): strain
            for strain, path in paths.items()
        }
        for future in tqdm(as_completed(futures), total=len(futures), disable=not progress):
            indexes[futures[future]] = future.result()
    # Completion order is arbitrary, so restore the strain order
    return {strain: indexes[strain] for strain in strains}


def gene_output_path(output_dir: str, gene: str) -> str:
    return os.path.join(output_dir, f"SNPs_AA_{gene}.txt")


def write_gene_sequences(
    genes: List[str],
    strains: Dict[str, str],
    indexes: Dict[str, ProteinIndex],
    output_dir: str,
) -> Dict[str, str]:
    """Write one file per gene holding that gene's protein in every strain, ready for alignment

    Each strain is searched for the gene name itself rather than its ortholog.
    Strains without a match are left out of the file.

    Args:
        genes (List[str]): Gene names
        strains (Dict[str, str]): Strain name --> strain folder
        indexes (Dict[str, ProteinIndex]): Strain name --> protein index
        output_dir (str): Directory to write `SNPs_AA_<gene>.txt` files to

    Returns:
        Dict[str, str]: Gene name --> path written
    """
    written = {}
    for gene in genes:
        records = []
        for strain in strains:
            sequence = indexes[strain].extract(gene)
            if sequence is None:
                logging.debug(f"{gene} not found in {strain}")
                continue
            records.append(SeqRecord(Seq(sequence), id=f"{strain}_{gene}", description=""))
        path = gene_output_path(output_dir, gene)
        # Opening with "w" clears the output of any previous run
        with open(path, "w", encoding="utf-8") as f:
            SeqIO.write(records, f, "fasta-2line")
        logging.debug(f"Wrote {len(records)} sequences of {gene} to {path}")
        written[gene] = path
    return written


def amino_acid_at(sequence: str | None, aa_position: int) -> str:
    """Get the amino acid at a 1-based position, or an empty string if there isn't one"""
    if sequence is None or aa_position > len(sequence):
        return ""
    return sequence[aa_position - 1]


def build_matrix(
    sites: List[VariantSite],
    strains: Dict[str, str],
    orthologs: OrthologTable,
    indexes: Dict[str, ProteinIndex],
    progress: bool = False,
) -> pd.DataFrame:
    """Build the table of amino acids found at every mutated site in every strain

    Args:
        sites (List[VariantSite]): Sites in variant table order
        strains (Dict[str, str]): Strain name --> strain folder. Defines the column order
        orthologs (OrthologTable): Presence/absence table to find each strain's locus id
        indexes (Dict[str, ProteinIndex]): Strain name --> protein index
        progress (bool, optional): Whether to show a progress bar. Defaults to False.

    Returns:
        pd.DataFrame: Columns of gene, aa_position, then one per strain. Missing values are empty strings
    """
    rows = []
    for site in tqdm(sites, disable=not progress):
        aa_position = codon_index(site.nt_position)
        row = [site.gene, aa_position]
        for strain in strains:
            locus = orthologs.resolve(site.gene, strain)
            if locus is None:
                # No ortholog in this strain
                row.append("")
                continue
            row.append(amino_acid_at(indexes[strain].extract(locus), aa_position))
        rows.append(row)

    matrix = pd.DataFrame(rows, columns=["gene", "aa_position"] + list(strains))
    return matrix.astype({"gene": "str", "aa_position": "int64"})


def write_matrix(header: str, matrix: pd.DataFrame, path: str) -> None:
    """Write the amino acid matrix beneath the header of the variant table

    Args:
        header (str): Header line of the core variant table
        matrix (pd.DataFrame): Matrix from `build_matrix`
        path (str): Path to write to. Any existing file is replaced
    """
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(header + "\n")
        matrix.to_csv(f, sep="\t", header=False, index=False, lineterminator="\n")


def unique_genes(sites: List[VariantSite]) -> List[str]:
    """Gene names of the sites in order of first appearance"""
    return list(dict.fromkeys(site.gene for site in sites))


def translate_mutations(
    outputs_folder: str,
    output_dir: str | None = None,
    genes: List[str] | None = None,
    allow_substring: bool = True,
    external_reference: bool = False,
    threads: int = 1,
    progress: bool = False,
) -> Tuple[pd.DataFrame, bool]:
    """Produce the per-gene sequence files and the amino acid matrix for a whole run

    Args:
        outputs_folder (str): Folder holding the strain, GenomeContent and allSNPs folders
        output_dir (str | None, optional): Where to write outputs. Defaults to the allSNPs folder.
        genes (List[str] | None, optional): Genes to write sequence files for. Defaults to every gene with a variant.
        allow_substring (bool, optional): Whether protein lookups may use partial header matches. Defaults to True.
        external_reference (bool, optional): Whether variants were called against an external reference. Defaults to False.
        threads (int, optional): Number of protein files to parse at once. Defaults to 1.
        progress (bool, optional): Whether to show progress bars. Defaults to False.

    Raises:
        MalformedInputException: Raised if inputs are missing or unparsable
        SchemaMismatchException: Raised if a strain has no presence/absence column

    Returns:
        Tuple[pd.DataFrame, bool]: (
            The amino acid matrix,
            Whether an external reference was used (so is missing from the matrix)
        )
    """
    if not os.path.isdir(outputs_folder):
        logging.error(f"{outputs_folder} is not a directory")
        raise MalformedInputException(outputs_folder, "outputs folder does not exist")
    if threads < 1:
        raise MalformedInputException(str(threads), "threads must be a positive integer")

    variants_path = find_input(outputs_folder, VARIANT_TABLE_PATTERN, "core variant table")
    orthologs_path = find_input(
        outputs_folder, "*GenomeContent*/gene_presence_absence.csv", "presence/absence table"
    )
    output_dir = find_output_dir(outputs_folder, output_dir)
    os.makedirs(output_dir, exist_ok=True)
    logging.info(f"Variant table: {variants_path}")
    logging.info(f"Presence/absence table: {orthologs_path}")

    header, sites = read_variant_sites(variants_path)
    logging.debug(f"Read {len(sites)} variant sites")

    strains = find_strains(outputs_folder)
    logging.info(f"Strains: {', '.join(strains)}")

    orthologs = OrthologTable(orthologs_path)
    orthologs.check_strains(strains)
    extra = orthologs.extra_strains(strains)
    if extra:
        logging.info(f"Presence/absence columns without a strain folder: {', '.join(extra)}")
        external_reference = True
    if external_reference:
        logging.warning(
            "Variants were called against an external reference, which is not a column of the matrix"
        )

    indexes = load_protein_indexes(strains, allow_substring, threads, progress)
    logging.debug("Loaded protein annotations")

    if genes is None:
        genes = unique_genes(sites)
    write_gene_sequences(genes, strains, indexes, output_dir)
    logging.debug(f"Wrote sequence files for {len(genes)} genes")

    matrix = build_matrix(sites, strains, orthologs, indexes, progress)
    write_matrix(header, matrix, os.path.join(output_dir, MATRIX_FILENAME))
    logging.debug(f"Wrote {MATRIX_FILENAME}")
    return matrix, external_reference
