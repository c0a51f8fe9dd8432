"""
音频工具：PCM 格式转换、能量估计、音量电平
"""
import numpy as np


def float32_to_pcm16(audio: np.ndarray) -> bytes:
    """
    Float32 采样（-1.0 ~ 1.0）转为小端 16-bit PCM

    负值按 0x8000、正值按 0x7FFF 缩放，超出范围先截断。

    Args:
        audio: 输入音频数组

    Returns:
        little-endian int16 字节串
    """
    clipped = np.clip(np.asarray(audio, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype("<i2").tobytes()


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """小端 16-bit PCM 转为 Float32（奇数长度时丢弃最后一个字节）"""
    if len(data) % 2 != 0:
        data = data[:-1]
    pcm = np.frombuffer(data, dtype="<i2")
    return pcm.astype(np.float32) / 32768.0


def decode_frame(data: bytes, encoding: str = "pcm_s16le") -> bytes:
    """
    把客户端发来的音频帧统一为 PCM16 字节串

    Args:
        data: 原始二进制帧
        encoding: pcm_s16le 或 f32le

    Returns:
        PCM16 字节串
    """
    if encoding == "f32le":
        usable = len(data) - len(data) % 4
        samples = np.frombuffer(data[:usable], dtype="<f4")
        return float32_to_pcm16(samples)
    if len(data) % 2 != 0:
        data = data[:-1]
    return data


def estimate_energy(audio: np.ndarray) -> float:
    """
    估计音频能量

    Args:
        audio: 输入音频数组

    Returns:
        能量值（RMS）
    """
    if len(audio) == 0:
        return 0.0

    # 转换为浮点数
    if audio.dtype == np.int16:
        audio_float = audio.astype(np.float32) / 32768.0
    else:
        audio_float = audio.astype(np.float32)

    # 计算RMS（均方根）
    rms = np.sqrt(np.mean(audio_float ** 2))

    return float(rms)


def audio_level(pcm: bytes) -> int:
    """PCM16 帧的音量电平（0-100）"""
    rms = estimate_energy(pcm16_to_float32(pcm))
    return min(100, int(rms * 3000))
