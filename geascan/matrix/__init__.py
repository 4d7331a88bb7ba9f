"""Genotype matrix decompositions"""
