"""Perceptual criterion: content, style, histogram and DeepDream losses measured
inside a frozen VGG19, for training feedforward style transfer and upsampling
networks.

Loss stages are spliced after named layers of the loss network, filled with
target statistics in capture sweeps, and measured against candidates in loss
sweeps; the gradient is relayed back through the unmodified backbone.
"""
