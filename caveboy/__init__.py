"""
caveboy package
~~~~~~~~~~~~~~~

Three layer perceptron for recognizing fixed size image patterns.
Contains the network and its packed buffers, backpropagation, the
training loop, data parallel training over a communicator group,
plain text weight files, a model store and an API server.
"""

__version__ = "1.0.0"
