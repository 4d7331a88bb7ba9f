"""Thresholding and cross-method consensus"""
