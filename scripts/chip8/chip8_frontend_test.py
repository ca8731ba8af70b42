import os
import tempfile
import unittest

import pygame

from chip8 import CYCLES_PER_FRAME, Chip8
from chip8_frontend import KEY_MAPPINGS, Beeper, get_args, handle_event, read_rom


class TestKeyboard(unittest.TestCase):
    def test_keydown_presses(self):
        chip = Chip8()
        self.assertTrue(handle_event(chip, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_v)))
        self.assertTrue(chip.keypad[0xF])

    def test_keyup_releases(self):
        chip = Chip8()
        chip.keypad.press(0x0)
        handle_event(chip, pygame.event.Event(pygame.KEYUP, key=pygame.K_x))
        self.assertFalse(chip.keypad[0x0])

    def test_unmapped_key_is_ignored(self):
        chip = Chip8()
        self.assertTrue(handle_event(chip, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_p)))
        self.assertTrue(chip.keypad.untouched())

    def test_quit(self):
        chip = Chip8()
        self.assertFalse(handle_event(chip, pygame.event.Event(pygame.QUIT)))
        self.assertFalse(handle_event(chip, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_ESCAPE)))

    def test_layout_covers_every_key(self):
        self.assertEqual(sorted(KEY_MAPPINGS.values()), list(range(16)))


class TestSetup(unittest.TestCase):
    def test_defaults(self):
        args = get_args(["-f", "pong.ch8"])
        self.assertEqual(args.file, "pong.ch8")
        self.assertEqual(args.cycles, CYCLES_PER_FRAME)
        self.assertEqual(args.fps, 60)
        self.assertFalse(args.mute)

    def test_read_rom(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "rom.ch8")
            with open(path, "wb") as f:
                f.write(b"\x00\xe0\x12\x00")
            self.assertEqual(read_rom(path), b"\x00\xe0\x12\x00")

    def test_square_wave(self):
        wave = Beeper.square_wave(freq=441, sample_rate=44100)
        self.assertEqual(len(wave), 100 * 2)     # one period of 16 bit samples

    def test_square_wave_interleaves_channels(self):
        mono = Beeper.square_wave(freq=441, sample_rate=44100)
        stereo = Beeper.square_wave(freq=441, sample_rate=44100, channels=2)
        self.assertEqual(len(stereo), 2 * len(mono))
        self.assertEqual(stereo[:4], mono[:2] * 2)


class TestBeeper(unittest.TestCase):
    def setUp(self):
        os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
        pygame.mixer.quit()

    def tearDown(self):
        pygame.mixer.quit()

    def test_wave_matches_running_stereo_mixer(self):
        try:
            pygame.mixer.init(44100, -16, 2)
        except pygame.error:
            self.skipTest("no audio driver available")
        beeper = Beeper()
        _, _, channels = pygame.mixer.get_init()
        # one period of 440 Hz is 100 frames, 2 bytes per sample per channel
        self.assertEqual(len(beeper.sound.get_raw()), 100 * 2 * channels)

    def test_silent_until_beeping(self):
        try:
            pygame.mixer.init(44100, -16, 1)
        except pygame.error:
            self.skipTest("no audio driver available")
        beeper = Beeper(volume=0.5)
        self.assertEqual(beeper.sound.get_volume(), 0)
        beeper.update(True)
        self.assertGreater(beeper.sound.get_volume(), 0)
        beeper.muted = True
        beeper.update(True)
        self.assertEqual(beeper.sound.get_volume(), 0)


if __name__ == "__main__":
    unittest.main()
