"""Shared configuration, data types, errors and statistics"""
