import base64
import unittest

from nova_models import Target, normalize_request, parse_reference
from nova_providers import InvalidRequest

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
PNG_B64 = base64.b64encode(PNG_BYTES).decode("ascii")
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 16


class ReferenceFieldTests(unittest.TestCase):
    def test_historical_field_names(self):
        for field in ("referenceImage", "reference", "ref", "image", "image_url", "image_base64"):
            with self.subTest(field=field):
                req = normalize_request({"prompt": "p", field: "https://x/ref.png"})
                self.assertEqual(req.reference.url, "https://x/ref.png")

    def test_first_listed_field_wins(self):
        req = normalize_request({"ref": "https://x/b.png", "referenceImage": "https://x/a.png"})
        self.assertEqual(req.reference.url, "https://x/a.png")

    def test_data_uri(self):
        req = normalize_request({"prompt": "p", "image": f"data:image/png;base64,{PNG_B64}"})
        self.assertEqual(req.reference.data, PNG_BYTES)
        self.assertEqual(req.reference.mime, "image/png")

    def test_bare_base64_is_sniffed(self):
        ref = parse_reference(base64.b64encode(JPEG_BYTES).decode("ascii"))
        self.assertEqual(ref.mime, "image/jpeg")
        self.assertEqual(ref.data, JPEG_BYTES)

    def test_bare_base64_with_line_breaks(self):
        wrapped = "\n".join(PNG_B64[i:i + 8] for i in range(0, len(PNG_B64), 8))
        self.assertEqual(parse_reference(wrapped).data, PNG_BYTES)

    def test_garbage_reference_rejected(self):
        with self.assertRaises(InvalidRequest):
            normalize_request({"prompt": "p", "ref": "not an image at all!"})

    def test_non_image_data_uri_rejected(self):
        with self.assertRaises(InvalidRequest):
            normalize_request({"prompt": "p", "ref": "data:text/plain;base64,aGk="})

    def test_uploaded_file_takes_precedence(self):
        req = normalize_request({"ref": "https://x/ignored.png"}, upload=(PNG_BYTES, "", "logo.png"))
        self.assertEqual(req.reference.data, PNG_BYTES)
        self.assertEqual(req.reference.mime, "image/png")
        self.assertEqual(req.reference.filename, "logo.png")

    def test_empty_upload_ignored(self):
        req = normalize_request({"prompt": "p"}, upload=(b"", "image/png", "empty.png"))
        self.assertIsNone(req.reference)


class PromptAndEchoTests(unittest.TestCase):
    def test_missing_prompt_and_reference(self):
        with self.assertRaises(InvalidRequest):
            normalize_request({"target": "both"})

    def test_blank_prompt_counts_as_missing(self):
        with self.assertRaises(InvalidRequest):
            normalize_request({"prompt": "   "})

    def test_reference_without_prompt_is_echo(self):
        req = normalize_request({"referenceImage": "https://x/ref.png"})
        self.assertTrue(req.is_echo)
        self.assertEqual(req.reference.original, "https://x/ref.png")

    def test_prompt_is_not_echo(self):
        self.assertFalse(normalize_request({"prompt": "fox", "ref": "https://x/ref.png"}).is_echo)

    def test_prompt_from_product_fields(self):
        req = normalize_request({
            "product": {"category": "Keychain", "name": "Fox"},
            "color": "orange",
            "text1": "Hello",
            "text2": "World",
        })
        self.assertIn("Keychain Fox", req.prompt)
        self.assertIn("orange", req.prompt)
        self.assertIn('"Hello World"', req.prompt)

    def test_body_must_be_mapping(self):
        with self.assertRaises(InvalidRequest):
            normalize_request(["prompt"])


class TargetAndParameterTests(unittest.TestCase):
    def test_target_default_and_aliases(self):
        self.assertEqual(normalize_request({"prompt": "p"}).target, Target.BOTH)
        self.assertEqual(normalize_request({"prompt": "p", "target": "vector"}).target, Target.OWNER)
        self.assertEqual(normalize_request({"prompt": "p", "target": "Realistic"}).target, Target.CUSTOMER)
        self.assertEqual(normalize_request({"prompt": "p", "mode": "raster"}).target, Target.CUSTOMER)

    def test_unknown_target(self):
        with self.assertRaises(InvalidRequest):
            normalize_request({"prompt": "p", "target": "poster"})

    def test_parameters_object_and_top_level_merge(self):
        req = normalize_request({
            "prompt": "p",
            "parameters": {"size": "1024x768", "steps": "30", "seed": 7},
            "steps": 20,
            "guidance": "3.5",
        })
        params = req.parameters
        self.assertEqual(params.size, "1024x768")
        self.assertEqual(params.steps, 20)
        self.assertEqual(params.seed, 7)
        self.assertEqual(params.guidance, 3.5)

    def test_params_alias_and_json_text(self):
        req = normalize_request({"prompt": "p", "params": '{"strength": 0.4}'})
        self.assertEqual(req.parameters.strength, 0.4)

    def test_strength_is_clamped(self):
        self.assertEqual(normalize_request({"prompt": "p", "strength": 3}).parameters.strength, 1.0)
        self.assertEqual(normalize_request({"prompt": "p", "strength": -1}).parameters.strength, 0.0)

    def test_invalid_values(self):
        for body in ({"size": "big"}, {"steps": "many"}, {"seed": True}, {"parameters": "[1"}):
            with self.subTest(body=body):
                with self.assertRaises(InvalidRequest):
                    normalize_request({"prompt": "p", **body})

    def test_size_auto_allowed(self):
        self.assertEqual(normalize_request({"prompt": "p", "size": "AUTO"}).parameters.size, "auto")

    def test_flags_and_meta(self):
        req = normalize_request({
            "prompt": "p",
            "strict": "true",
            "negative_prompt": "no gradients",
            "font": "Inter",
            "meta": {"title": "Fox badge", "source": "upload"},
            "model": " black-forest-labs/flux-dev ",
        })
        self.assertTrue(req.strict)
        self.assertEqual(req.negative, "no gradients")
        self.assertEqual(req.font, "Inter")
        self.assertEqual((req.title, req.source), ("Fox badge", "upload"))
        self.assertEqual(req.model, "black-forest-labs/flux-dev")


if __name__ == "__main__":
    unittest.main()
