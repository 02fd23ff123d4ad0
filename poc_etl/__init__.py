"""
ETL for IoT proof-of-coverage report files.

This package discovers timestamped report files in S3, transforms them into
beacon, hotspot and witness-edge documents and upserts them into a document
store, checkpointing progress so repeated and continuous runs never
double-load data.
"""
