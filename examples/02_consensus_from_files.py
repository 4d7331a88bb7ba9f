#!/usr/bin/env python3
"""
Example 02: Consensus From Saved Candidate Files

Candidate sets written by earlier runs (one locus id per line) can be
re-combined without refitting anything.
"""

from geascan.core.consensus import combine, combine_groups, read_candidate_set


def main():
    results_dir = './example01_results'
    sets = [
        read_candidate_set(f'{results_dir}/GEA_LFMM_fdr0.05_candidates.txt', name='LFMM', structure_corrected=True),
        read_candidate_set(f'{results_dir}/GEA_pRDA_fdr0.05_candidates.txt', name='pRDA', structure_corrected=True),
        read_candidate_set(f'{results_dir}/GEA_RDA_fdr0.05_candidates.txt', name='RDA'),
        read_candidate_set(f'{results_dir}/GEA_GF_top0.5pct_candidates.txt', name='GF'),
    ]

    report = combine(sets)
    print(report.to_dataframe()[['Set', 'Size']].to_string(index=False))

    for grouping, grouped in combine_groups(sets).items():
        print(f"\n{grouping}: {grouped.intersection_count} shared loci")
        print(grouped.members()[:20])

    # Pairwise overlap of two methods
    print(f"\nLFMM & GF: {len(report.pair('LFMM', 'GF'))} loci")


if __name__ == "__main__":
    main()
