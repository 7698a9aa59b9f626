#!/usr/bin/env python
'''orthovar is a script which pulls together the core SNP table, the Roary presence/absence table
    and the Prokka annotation of every strain in an outputs folder of the assembly/annotation
    pipeline, to produce the amino acid found at every mutated site in every strain.

Writes SNPs_AA_<gene>.txt for each mutated gene and SNPs_AA_allgenes.txt into the allSNPs folder
'''
import argparse
import logging
import os
import sys

import orthovar

if __name__ == "__main__":
    #Argparser setup
    parser = argparse.ArgumentParser(description="Translate core genome SNPs into the amino acids of every strain")
    parser.add_argument("--outputs_folder", required=True, help="the path to the folder that contains ALL outputs of the genome analysis pipeline")
    parser.add_argument("--specific_genes", default=None, required=False, help="names of the genes to write sequence files for, within quotes and separated with a space. Defaults to every gene with a SNP")
    parser.add_argument("--output_dir", default=None, required=False, help="directory to save output files to. Defaults to the allSNPs folder within --outputs_folder")
    parser.add_argument("--threads", type=int, default=8, help="number of annotation files to read at once")
    parser.add_argument("--exact_only", action='store_true', default=False, help="only match proteins by their whole locus id, never by part of the header")
    parser.add_argument("--external_reference", action='store_true', default=False, help="whether the SNPs were called against an external reference genome")
    parser.add_argument("--progress", action='store_true', default=False, help="whether to show progress using tqdm")
    parser.add_argument("--debug", action='store_true', default=False, help="whether to log debug messages")
    options = parser.parse_args()

    if not os.path.isdir(options.outputs_folder):
        print("Error: --outputs_folder doesn't exist.", file=sys.stderr)
        sys.exit(1)
    if options.threads < 1:
        print("Error: --threads must be a positive integer.", file=sys.stderr)
        sys.exit(1)
    genes = options.specific_genes.split() if options.specific_genes else None
    if genes is not None and len(genes) == 0:
        print("Error: --specific_genes cannot be empty.", file=sys.stderr)
        sys.exit(1)

    #Logging setup, in the same directory as the outputs
    try:
        logDir = orthovar.find_output_dir(options.outputs_folder, options.output_dir)
    except orthovar.MalformedInputException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    os.makedirs(logDir, exist_ok=True)
    logging.basicConfig(filename=os.path.join(logDir, 'orthovar.log'), filemode='w', format='%(asctime)s -  %(levelname)s - %(message)s', datefmt='%d-%b-%y %H:%M:%S', level=logging.DEBUG if options.debug else logging.INFO)
    logging.info(f"orthovar {orthovar.__version__} starting with outputs folder {options.outputs_folder}")

    try:
        matrix, externalReference = orthovar.translate_mutations(
            options.outputs_folder,
            output_dir=logDir,
            genes=genes,
            allow_substring=not options.exact_only,
            external_reference=options.external_reference,
            threads=options.threads,
            progress=options.progress,
        )
    except (orthovar.MalformedInputException, orthovar.SchemaMismatchException) as e:
        logging.error(e.message)
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)

    logging.info("********** Successfully completed **********")
    logging.info(f"Sites: {len(matrix)}")
    logging.info(f"Strains: {len(matrix.columns) - 2}")
    print("All analyses finished sucessfully. Good luck with the results!")
    if externalReference:
        print("Please, consider that the external reference is not a column of the final table of amino acids,")
        print("although the SNP positions were called against it.")
