"""Input loading, structure assignments and alignment"""
