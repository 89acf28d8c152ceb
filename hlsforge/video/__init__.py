"""Video encoding: backend detection, rendition planning and the ffmpeg HLS export"""
