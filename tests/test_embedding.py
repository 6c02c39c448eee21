import unittest
from unittest import mock

import numpy as np
import requests

from tieredvectordb.exceptions import DimensionMismatch, EmbeddingUnavailable
from tieredvectordb.implementations.embedding import CallableEmbeddingSource, OllamaEmbeddingSource
from tieredvectordb.interfaces.embedding import EmbeddingSource


def ollama_reply(payload):
    response = mock.Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class TestOllamaEmbeddingSource(unittest.TestCase):
    """Тесты клиента эмбеддингов Ollama с подмененной HTTP-сессией."""

    def setUp(self):
        self.session = mock.Mock()
        self.source = OllamaEmbeddingSource(
            "http://ollama:11434/", model="nomic-embed-text", dimension=3, timeout=2.0, session=self.session
        )

    def test_protocol(self):
        self.assertIsInstance(self.source, EmbeddingSource)
        self.assertEqual(self.source.dimension, 3)

    def test_embed(self):
        """Успешный ответ превращается в float32-вектор."""
        self.session.post.return_value = ollama_reply({"embedding": [0.5, -1.0, 2.0]})
        vector = self.source.embed("hello")

        self.assertEqual(vector.dtype, np.float32)
        np.testing.assert_array_equal(vector, [0.5, -1.0, 2.0])
        self.session.post.assert_called_once_with(
            "http://ollama:11434/api/embeddings",
            json={"model": "nomic-embed-text", "prompt": "hello"},
            timeout=2.0,
        )

    def test_connection_error(self):
        """Недоступный сервер дает EmbeddingUnavailable."""
        self.session.post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(EmbeddingUnavailable):
            self.source.embed("hello")

    def test_http_error(self):
        response = ollama_reply({})
        response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
        self.session.post.return_value = response
        with self.assertRaises(EmbeddingUnavailable):
            self.source.embed("hello")

    def test_malformed_reply(self):
        """Ответ без поля embedding или не-JSON."""
        self.session.post.return_value = ollama_reply({"error": "model not found"})
        with self.assertRaises(EmbeddingUnavailable):
            self.source.embed("hello")

        response = mock.Mock()
        response.raise_for_status.return_value = None
        response.json.side_effect = ValueError("Expecting value")
        self.session.post.return_value = response
        with self.assertRaises(EmbeddingUnavailable):
            self.source.embed("hello")

    def test_wrong_dimension(self):
        """Вектор неверной длины не приводится к нужной размерности."""
        self.session.post.return_value = ollama_reply({"embedding": [1.0, 2.0]})
        with self.assertRaises(DimensionMismatch):
            self.source.embed("hello")


class TestCallableEmbeddingSource(unittest.TestCase):

    def test_wraps_function(self):
        source = CallableEmbeddingSource(lambda text: [len(text), 0.0], dimension=2)
        np.testing.assert_array_equal(source.embed("abc"), [3.0, 0.0])

    def test_failures(self):
        def broken(text):
            raise RuntimeError("model crashed")

        with self.assertRaises(EmbeddingUnavailable):
            CallableEmbeddingSource(broken, dimension=2).embed("abc")
        with self.assertRaises(DimensionMismatch):
            CallableEmbeddingSource(lambda text: [1.0], dimension=2).embed("abc")


if __name__ == '__main__':
    unittest.main()
